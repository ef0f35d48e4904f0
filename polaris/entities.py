# polaris/entities.py
from datetime import datetime, timezone
from enum import Enum
from typing import TypeAlias
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

from polaris.errors import NotFound

UUID: TypeAlias = str

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests / local runs)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_FLIGHT_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


class ReportKind(str, Enum):
    PRELIMINARY = "preliminary"
    FINAL = "final"


class ReportJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Job(Base, TimestampMixin):
    __tablename__ = "polaris_jobs"

    job_id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str | None] = mapped_column(Text)
    experience_level: Mapped[str | None] = mapped_column(String(64))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.DRAFT.value)

    # stage capture (flags only ever go false -> true)
    greeting_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    org_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requirements_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dynamic_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    greeting_data: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
    org_data: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
    requirements_data: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    # generated once, then frozen; only dynamic_answers changes afterwards
    dynamic_questions: Mapped[list[dict[str, object]]] = mapped_column(JsonType, nullable=False, default=list)
    dynamic_answers: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    # stage key -> ISO time of its last write
    stage_saved_at: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    preliminary_report: Mapped[str | None] = mapped_column(Text)
    preliminary_report_edited: Mapped[str | None] = mapped_column(Text)
    final_report: Mapped[str | None] = mapped_column(Text)
    final_report_edited: Mapped[str | None] = mapped_column(Text)

    # external submission (handle and status are written together)
    report_job_id: Mapped[str | None] = mapped_column(String(128))
    report_job_status: Mapped[str | None] = mapped_column(String(20))
    report_job_progress: Mapped[int | None] = mapped_column(Integer)
    report_job_error: Mapped[str | None] = mapped_column(Text)
    report_job_kind: Mapped[str | None] = mapped_column(String(20))
    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    session_state: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
    session_saved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    edits_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    edits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # freeform JSON metadata (e.g. {"degraded": true})
    metadata_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    legacy_summary_id: Mapped[str | None] = mapped_column(String(64))

    edits = relationship(
        "JobEdit",
        cascade="all, delete-orphan",
        order_by="JobEdit.edit_number",
    )
    reports = relationship(
        "JobReport",
        cascade="all, delete-orphan",
        order_by="JobReport.version",
    )
    activity = relationship(
        "JobActivity",
        cascade="all, delete-orphan",
        order_by="JobActivity.created_at",
    )

    __table_args__ = (
        Index("ix_polaris_jobs_owner", "owner_id"),
        Index("ix_polaris_jobs_status", "status"),
        Index("ix_polaris_jobs_report_job_id", "report_job_id"),
    )


class JobEdit(Base):
    __tablename__ = "polaris_job_edits"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    job_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("polaris_jobs.job_id", ondelete="CASCADE"),
        nullable=False,
    )
    report_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    original_content: Mapped[str] = mapped_column(Text, nullable=False)
    edited_content: Mapped[str] = mapped_column(Text, nullable=False)
    edit_number: Mapped[int] = mapped_column(Integer, nullable=False)

    ai_assisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_prompt: Mapped[str | None] = mapped_column(Text)
    ai_model: Mapped[str | None] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_polaris_job_edits_job", "job_id"),)


class JobReport(Base):
    __tablename__ = "polaris_job_reports"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    job_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("polaris_jobs.job_id", ondelete="CASCADE"),
        nullable=False,
    )
    report_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    generated_by: Mapped[str | None] = mapped_column(String(20))  # ai | user | import
    model_used: Mapped[str | None] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_polaris_job_reports_job_kind", "job_id", "report_kind"),)


class JobActivity(Base):
    __tablename__ = "polaris_job_activity"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    job_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("polaris_jobs.job_id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str | None] = mapped_column(String(32))
    details: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_polaris_job_activity_job", "job_id"),)


class ReportJob(Base, TimestampMixin):
    """Provider-side record of one generation request (local provider)."""

    __tablename__ = "report_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ReportJobStatus.QUEUED.value)

    model: Mapped[str] = mapped_column(String(128), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.2)
    max_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=2600)

    percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    eta_seconds: Mapped[int | None] = mapped_column(Integer)
    result: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_report_jobs_status", "status"),)


def load_owned_job(session, job_id: str, owner_id: str, *, lock: bool = False) -> Job:
    """Fetch a Job the caller owns; someone else's Job is indistinguishable from a missing one."""
    q = session.query(Job).filter(Job.job_id == job_id, Job.owner_id == owner_id)
    if lock:
        q = q.with_for_update()
    job = q.one_or_none()
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    return job
