# polaris/llm_client.py
import asyncio
import logging
import random
import threading
import time
import traceback
from typing import Any, Callable, Dict, Optional, TypeVar

from langchain_google_vertexai import VertexAI
from openai import OpenAI

from polaris.model_props import generation_params, is_openai_model, parse_model_name

T = TypeVar("T")

logger = logging.getLogger("polaris_backend")


class MaxRetryErrorsException(Exception):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_resource_exhausted_error(e: Exception) -> bool:
    msg = str(e)
    return "429" in msg and (
        "RESOURCE_EXHAUSTED" in msg
        or "Resource has been exhausted" in msg
        or "Too Many Requests" in msg
        or "rate_limit" in msg
    )


def _respect_global_backoff() -> None:
    while True:
        with _global_backoff_lock:
            wait = _global_wait_until - time.monotonic()
        if wait <= 0:
            return
        time.sleep(min(wait, 1.0))


def _register_429_and_get_delay() -> float:
    global _global_wait_until, _global_backoff_seconds

    with _global_backoff_lock:
        now = time.monotonic()
        base = _global_backoff_seconds
        delay = random.uniform(base * 0.95, base * 1.35)
        _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
        _global_wait_until = max(_global_wait_until, now + delay)
        return delay


def _reset_backoff_on_success() -> None:
    global _global_backoff_seconds
    with _global_backoff_lock:
        _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.
    """
    last_exception: Exception | None = None

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_resource_exhausted_error(e) or _is_timeout_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class LlmClient:
    """
    Completion-style wrapper:

        text = llm.invoke("some prompt")

    Under the hood:
    - Vertex: VertexAI.invoke(prompt)
    - OpenAI: Responses API (client.responses.create)

    `last_usage` accumulates token counts over the client's lifetime.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self.last_usage: Optional[Dict[str, int]] = None
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            vertex_kwargs: Dict[str, Any] = {}
            if temperature is not None:
                vertex_kwargs["temperature"] = temperature
            if max_tokens:
                vertex_kwargs["max_output_tokens"] = max_tokens
            self._vertex = VertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
                **vertex_kwargs,
            )
            self._client = None
        else:
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            self._openai_params.update(
                generation_params(self.model_name, temperature=temperature, max_tokens=max_tokens)
            )
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _merge_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        self._merge_usage({
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
        })

    def _merge_vertex_usage(self, resp: Any) -> None:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            if isinstance(rm, dict):
                usage_md = rm.get("usage_metadata")
        if not usage_md:
            return

        def get(k: str) -> int:
            if isinstance(usage_md, dict):
                return int(usage_md.get(k, 0) or 0)
            return int(getattr(usage_md, k, 0) or 0)

        self._merge_usage({
            "prompt_token_count": get("prompt_token_count"),
            "candidates_token_count": get("candidates_token_count"),
            "total_token_count": get("total_token_count"),
        })

    def _invoke_once(self, prompt: str) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        if self.provider == "vertex":
            resp = self._vertex.invoke(prompt)
            self._merge_vertex_usage(resp)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=prompt,
            **self._openai_params,
        )
        self._merge_openai_usage(resp)
        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def invoke(self, prompt: str, *, retries: int = 3) -> str:
        """
        Synchronous call with global 429/timeout backoff + retries.
        """
        return call_with_retries_sync(
            lambda: self._invoke_once(prompt),
            retries=retries,
            log=lambda msg: logger.warning(f"[LLM-RETRY] {msg}"),
        )


class LlmFactory:
    """Builds (and caches) one LlmClient per model/sampling combination."""

    def __init__(self, *, vertex_project: str, vertex_region: str, timeout: float | None = None):
        self.vertex_project = vertex_project
        self.vertex_region = vertex_region
        self.timeout = timeout
        self._clients: Dict[tuple, LlmClient] = {}
        self._lock = threading.Lock()

    def get(self, model_name: str, *, temperature: float | None = None, max_tokens: int | None = None) -> LlmClient:
        key = (model_name, temperature, max_tokens)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = LlmClient(
                    model_name,
                    vertex_project=self.vertex_project,
                    vertex_region=self.vertex_region,
                    timeout=self.timeout,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                self._clients[key] = client
            return client
