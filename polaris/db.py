# polaris/db.py
import logging
import os
from typing import Callable

from google.auth import default as google_auth_default
from google.cloud import secretmanager
from google.oauth2 import service_account
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from polaris import settings
from polaris.entities import Base

logger = logging.getLogger("polaris_backend")


class DbConnection:
    """
    Builds the SQLAlchemy engine + session factory.

    Either DATABASE_URL is given (local / tests, any SQLAlchemy URL), or the URL is
    assembled from DB_* env vars, pulling the password from Secret Manager when
    DB_PASSWORD is empty and DB_SECRET_ID is set.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self.DB_HOST = settings.DB_HOST
        self.DB_PORT = settings.DB_PORT
        self.DB_NAME = settings.DB_NAME
        self.DB_USER = settings.DB_USER
        self.DB_PASSWORD = settings.DB_PASSWORD
        self.DB_SECRET_ID = settings.DB_SECRET_ID

        self.DATABASE_URL = database_url or settings.DATABASE_URL
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+psycopg2://{self.DB_USER}:{self._get_db_password_lazy()}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

    # -------- GCP auth / creds --------
    def _build_creds(self):
        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        if key_path and os.path.exists(key_path):
            return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
        creds, _ = google_auth_default(scopes=scopes)
        return creds

    # -------- DB password (Secret Manager) --------
    def _get_db_password_lazy(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID:
            client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = client.secret_version_path(settings.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            connect_args = {}
            if self.DATABASE_URL.startswith("sqlite"):
                # sessions are opened from worker threads (asyncio.to_thread)
                connect_args["check_same_thread"] = False
            self._engine = create_engine(
                self.DATABASE_URL,
                future=True,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
            logger.info("[DB] engine created for %s", self._engine.url.render_as_string(hide_password=True))
        return self._engine

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.engine,
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
