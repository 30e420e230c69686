import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from pydantic import ValidationError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from cloudmigrate.models import ACTIVE_STATUSES, JobCancellation, JobRecord, JobStatus
from cloudmigrate.schemas.transfer import JobOutput
from cloudmigrate.services.errors import InvalidStateTransition, NotFound

logger = logging.getLogger(__name__)


@dataclass
class JobFilter:
    statuses: set[JobStatus] = field(default_factory=set)
    created_from: datetime | None = None
    created_to: datetime | None = None
    name_prefix: str | None = None
    page_size: int = 50
    continuation_token: str | None = None
    scope: Literal["mine", "all"] = "mine"
    started_by: str | None = None


@dataclass
class JobGroup:
    parent: JobRecord
    children: list[JobRecord] = field(default_factory=list)


def encode_token(record: JobRecord) -> str:
    raw = json.dumps({"c": record.created_at.isoformat(), "i": record.instance_id})
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_token(token: str) -> tuple[datetime, str]:
    try:
        data = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        return datetime.fromisoformat(data["c"]), str(data["i"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
        raise ValueError("invalid continuation token") from exc


def has_failed_items(record: JobRecord) -> bool:
    if not record.serialized_output:
        return False
    try:
        output = JobOutput.model_validate_json(record.serialized_output)
    except ValidationError:
        logger.warning("Job %s has an unreadable output blob", record.instance_id)
        return False
    return any(not r.success for r in output.results)


def group_records(records: list[JobRecord]) -> list[JobGroup]:
    """Group a page of records into parent/children by ``parent_instance_id``.

    Children whose parent is not part of ``records`` are listed as their own group.
    """
    by_id = {r.instance_id: r for r in records}
    groups: dict[str, JobGroup] = {}
    for record in records:
        if record.parent_instance_id is None or record.parent_instance_id not in by_id:
            groups[record.instance_id] = JobGroup(parent=record)
    for record in records:
        if record.parent_instance_id is not None and record.parent_instance_id in groups:
            groups[record.parent_instance_id].children.append(record)

    for group in groups.values():
        group.children.sort(key=lambda r: (r.created_at, r.instance_id))
    return sorted(groups.values(), key=lambda g: (g.parent.created_at, g.parent.instance_id), reverse=True)


class JobRegistry:
    def __init__(self, db: Session):
        self.db = db

    def list(self, job_filter: JobFilter) -> tuple[list[JobRecord], str | None]:
        query = self.db.query(JobRecord)
        if job_filter.scope == "mine":
            query = query.filter(JobRecord.started_by == job_filter.started_by)
        if job_filter.statuses:
            query = query.filter(JobRecord.status.in_(list(job_filter.statuses)))
        if job_filter.created_from is not None:
            query = query.filter(JobRecord.created_at >= job_filter.created_from)
        if job_filter.created_to is not None:
            query = query.filter(JobRecord.created_at < job_filter.created_to)
        if job_filter.name_prefix:
            query = query.filter(JobRecord.name.startswith(job_filter.name_prefix, autoescape=True))
        if job_filter.continuation_token:
            created_at, instance_id = decode_token(job_filter.continuation_token)
            query = query.filter(
                or_(
                    JobRecord.created_at < created_at,
                    and_(JobRecord.created_at == created_at, JobRecord.instance_id < instance_id),
                )
            )

        rows = (
            query.order_by(JobRecord.created_at.desc(), JobRecord.instance_id.desc())
            .limit(job_filter.page_size + 1)
            .all()
        )
        page = rows[: job_filter.page_size]
        token = encode_token(page[-1]) if len(rows) > job_filter.page_size else None
        return page, token

    def get(self, instance_id: str) -> JobRecord:
        record = self.db.get(JobRecord, instance_id)
        if record is None:
            raise NotFound(f"Job {instance_id} not found")
        return record

    def purge(self, instance_id: str) -> bool:
        record = self.db.get(JobRecord, instance_id)
        if record is None:
            return False
        if not record.is_terminal:
            raise InvalidStateTransition(f"Job {instance_id} is {record.status.value}; only finished jobs can be purged")

        ids = [instance_id] + [c.instance_id for c in record.children]
        self.db.query(JobCancellation).filter(JobCancellation.instance_id.in_(ids)).delete(synchronize_session=False)
        self.db.delete(record)
        self.db.commit()
        logger.info("Purged job %s (%d child units)", instance_id, len(ids) - 1)
        return True

    def terminate(self, instance_id: str, reason: str = "") -> bool:
        record = self.get(instance_id)
        if record.status not in ACTIVE_STATUSES:
            raise InvalidStateTransition(f"Job {instance_id} is {record.status.value}; it cannot be terminated")

        if record.status == JobStatus.pending:
            record.status = JobStatus.terminated
            try:
                self.db.commit()
            except StaleDataError:
                # The coordinator picked the job up in the meantime.
                self.db.rollback()
                self.db.refresh(record)
                if record.status != JobStatus.running:
                    raise InvalidStateTransition(
                        f"Job {instance_id} is {record.status.value}; it cannot be terminated"
                    ) from None
            else:
                logger.info("Terminated pending job %s", instance_id)
                return True

        if self.db.get(JobCancellation, instance_id) is None:
            self.db.add(JobCancellation(instance_id=instance_id, reason=reason))
            self.db.commit()
        logger.info("Cancellation requested for running job %s", instance_id)
        return True
