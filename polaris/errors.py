# polaris/errors.py


class PolarisError(Exception):
    pass


class NotFound(PolarisError):
    pass


class Unauthenticated(PolarisError):
    pass


class GenerationFormatError(PolarisError):
    """
    Raised when provider text cannot be turned into the structure we asked for.
    `snippet` holds a bounded excerpt of the offending text for the logs / UI.
    """

    SNIPPET_LIMIT = 200

    def __init__(self, message: str, raw: str | None = None):
        self.snippet = (raw or "")[: self.SNIPPET_LIMIT]
        super().__init__(f"{message} (snippet: {self.snippet!r})" if raw else message)


class ProviderSubmissionError(PolarisError):
    pass


class ProviderTransientError(PolarisError):
    pass


class EditQuotaExceeded(PolarisError):
    pass


class InconsistentVersionState(PolarisError):
    pass


class InvalidTransition(PolarisError):
    pass


class DynamicQuestionsLocked(PolarisError):
    pass
