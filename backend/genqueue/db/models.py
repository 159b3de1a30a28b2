"""SQLAlchemy 2.0 ORM models for the generation queue."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp with microsecond precision (SQLite stores naive values)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Project(Base):
    """Project model: one unit of content work and the stages it requests.

    Only the fields the scheduler needs live here; scripts, channels and
    output paths belong to the application that owns the projects.
    """
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(Text, default="")
    stages: Mapped[list] = mapped_column(JSON, default=list)  # ["prompts", "audio", ...]
    status: Mapped[str] = mapped_column(String(20), default="draft")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
    # Set once every task is terminal; cleared when tasks are queued again
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class QueueTask(Base):
    """QueueTask model: the schedulable unit of work for one stage of one project.

    depends_on_task_id is a plain back-reference resolved through the store at
    eligibility-check time; there is no ORM relationship between tasks.
    """
    __tablename__ = "queue_tasks"
    __table_args__ = (
        Index("idx_queue_status", "status"),
        Index("idx_queue_project", "project_id"),
        Index("idx_queue_dependency", "depends_on_task_id"),
        Index("idx_queue_stage_group", "stage_group"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE")
    )
    task_type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default="pending")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    progress_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    depends_on_task_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("queue_tasks.id", ondelete="SET NULL"), nullable=True
    )
    stage_group: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
