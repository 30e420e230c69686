import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cloudmigrate.db.base import Base


def _instance_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"
    terminated = "terminated"
    continued_as_new = "continued_as_new"


ACTIVE_STATUSES = frozenset({JobStatus.pending, JobStatus.running})
TERMINAL_STATUSES = frozenset(
    {JobStatus.completed, JobStatus.failed, JobStatus.canceled, JobStatus.terminated, JobStatus.continued_as_new}
)

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.running, JobStatus.failed, JobStatus.canceled, JobStatus.terminated}),
    JobStatus.running: frozenset(
        {JobStatus.completed, JobStatus.failed, JobStatus.canceled, JobStatus.terminated, JobStatus.continued_as_new}
    ),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


class JobRecord(Base):
    __tablename__ = "job_records"

    instance_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_instance_id)
    name: Mapped[str] = mapped_column(String(128), index=True)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), default=JobStatus.pending, index=True)
    started_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    parent_instance_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("job_records.instance_id", ondelete="CASCADE"), nullable=True, index=True
    )
    serialized_input: Mapped[str] = mapped_column(Text, default="{}")
    serialized_output: Mapped[str | None] = mapped_column(Text, nullable=True)
    serialized_custom_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    children: Mapped[list["JobRecord"]] = relationship(
        back_populates="parent", cascade="all, delete-orphan", order_by="JobRecord.created_at"
    )
    parent: Mapped["JobRecord | None"] = relationship(back_populates="children", remote_side=[instance_id])

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobCancellation(Base):
    __tablename__ = "job_cancellations"

    instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reason: Mapped[str] = mapped_column(String(500), default="")
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
