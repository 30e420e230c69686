import logging
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from cloudmigrate.core.config import settings
from cloudmigrate.db.session import get_db
from cloudmigrate.models import JobRecord, JobStatus
from cloudmigrate.schemas.job import (
    JobGroupListOut,
    JobGroupOut,
    JobListOut,
    JobRecordOut,
    PurgeOut,
    RestartIn,
    RestartOut,
    StartJobOut,
    TerminateIn,
    TerminateOut,
)
from cloudmigrate.schemas.transfer import StartJobRequest, TransferCredentials
from cloudmigrate.services.auth import CurrentUser, get_current_user
from cloudmigrate.services.coordinator import JobCoordinator
from cloudmigrate.services.errors import (
    AuthFailure,
    InvalidStateTransition,
    MigrationError,
    NotFound,
    PreparationFailure,
)
from cloudmigrate.services.registry import JobFilter, JobRegistry, group_records, has_failed_items
from cloudmigrate.services.restart import RestartPlanner
from cloudmigrate.workers.tasks import run_transfer_job, run_transfer_job_inline

router = APIRouter()
logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[MigrationError], int]] = [
    (AuthFailure, 401),
    (NotFound, 404),
    (InvalidStateTransition, 409),
    (PreparationFailure, 400),
]


def get_coordinator() -> JobCoordinator:
    return JobCoordinator()


def _http_error(exc: MigrationError) -> HTTPException:
    for error_cls, status_code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=f"{exc.code}: {exc.detail}")
    return HTTPException(status_code=500, detail=f"{exc.code}: {exc.detail}")


def _job_out(record: JobRecord) -> JobRecordOut:
    return JobRecordOut(
        instance_id=record.instance_id,
        name=record.name,
        status=record.status.value,
        created_at=record.created_at,
        last_updated_at=record.last_updated_at,
        serialized_input=record.serialized_input,
        serialized_output=record.serialized_output,
        serialized_custom_status=record.serialized_custom_status,
        parent_instance_id=record.parent_instance_id,
        has_failed_items=has_failed_items(record),
    )


def _ensure_owner(record: JobRecord, current_user: CurrentUser) -> None:
    if record.started_by != current_user.subject and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="FORBIDDEN")


def _load_owned(registry: JobRegistry, instance_id: str, current_user: CurrentUser) -> JobRecord:
    try:
        record = registry.get(instance_id)
    except NotFound as exc:
        raise _http_error(exc) from exc
    _ensure_owner(record, current_user)
    return record


def _dispatch(
    background_tasks: BackgroundTasks,
    coordinator: JobCoordinator,
    instance_id: str,
    credentials: TransferCredentials,
) -> None:
    if settings.task_dispatch == "celery":
        try:
            run_transfer_job.delay(instance_id, credentials.model_dump())
            return
        except Exception as exc:  # noqa: BLE001
            logger.warning("Queue dispatch failed; falling back to in-process run: %s", exc)
    background_tasks.add_task(run_transfer_job_inline, instance_id, credentials.model_dump(), coordinator)


def _start_out(request: Request, instance_id: str) -> StartJobOut:
    status_uri = str(request.url_for("get_job", instance_id=instance_id))
    return StartJobOut(
        instance_id=instance_id,
        status_query_uri=status_uri,
        terminate_uri=str(request.url_for("terminate_job", instance_id=instance_id)),
        purge_uri=status_uri,
        restart_uri=str(request.url_for("restart_job", instance_id=instance_id)),
    )


@router.post("/jobs/{job_type}/start", response_model=StartJobOut, status_code=202)
def start_job(
    job_type: str,
    payload: StartJobRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    coordinator: JobCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(get_current_user),
):
    try:
        record = coordinator.submit(db, job_type, payload, started_by=current_user.subject)
    except MigrationError as exc:
        raise _http_error(exc) from exc

    _dispatch(background_tasks, coordinator, record.instance_id, payload.credentials)
    logger.info("Started %s job %s for %s", job_type, record.instance_id, current_user.subject)
    return _start_out(request, record.instance_id)


@router.get("/jobs", response_model=JobListOut)
def list_jobs(
    status: list[JobStatus] = Query(default=[]),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    name_prefix: str | None = Query(default=None),
    page_size: int = Query(default=settings.jobs_page_size, ge=1, le=settings.jobs_page_size_max),
    continuation_token: str | None = Query(default=None),
    scope: Literal["mine", "all"] = Query(default="mine"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    records, token = _list_records(
        db, current_user, set(status), created_from, created_to, name_prefix, page_size, continuation_token, scope
    )
    return JobListOut(instances=[_job_out(r) for r in records], continuation_token=token)


@router.get("/jobs/groups", response_model=JobGroupListOut)
def list_job_groups(
    status: list[JobStatus] = Query(default=[]),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    name_prefix: str | None = Query(default=None),
    page_size: int = Query(default=settings.jobs_page_size, ge=1, le=settings.jobs_page_size_max),
    continuation_token: str | None = Query(default=None),
    scope: Literal["mine", "all"] = Query(default="mine"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    records, token = _list_records(
        db, current_user, set(status), created_from, created_to, name_prefix, page_size, continuation_token, scope
    )
    groups = [
        JobGroupOut(parent=_job_out(g.parent), children=[_job_out(c) for c in g.children])
        for g in group_records(records)
    ]
    return JobGroupListOut(groups=groups, continuation_token=token)


def _list_records(
    db: Session,
    current_user: CurrentUser,
    statuses: set[JobStatus],
    created_from: datetime | None,
    created_to: datetime | None,
    name_prefix: str | None,
    page_size: int,
    continuation_token: str | None,
    scope: str,
) -> tuple[list[JobRecord], str | None]:
    if scope == "all" and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="FORBIDDEN")
    job_filter = JobFilter(
        statuses=statuses,
        created_from=created_from,
        created_to=created_to,
        name_prefix=name_prefix,
        page_size=page_size,
        continuation_token=continuation_token,
        scope=scope,
        started_by=current_user.subject,
    )
    try:
        return JobRegistry(db).list(job_filter)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"INVALID_CONTINUATION_TOKEN: {exc}") from exc


@router.get("/jobs/{instance_id}", response_model=JobRecordOut)
def get_job(instance_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    record = _load_owned(JobRegistry(db), instance_id, current_user)
    return _job_out(record)


@router.delete("/jobs/{instance_id}", response_model=PurgeOut)
def purge_job(instance_id: str, db: Session = Depends(get_db), current_user: CurrentUser = Depends(get_current_user)):
    registry = JobRegistry(db)
    record = db.get(JobRecord, instance_id)
    if record is not None:
        _ensure_owner(record, current_user)
    try:
        purged = registry.purge(instance_id)
    except MigrationError as exc:
        raise _http_error(exc) from exc
    return PurgeOut(instance_id=instance_id, purged=purged)


@router.post("/jobs/{instance_id}/terminate", response_model=TerminateOut)
def terminate_job(
    instance_id: str,
    payload: TerminateIn | None = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    registry = JobRegistry(db)
    _load_owned(registry, instance_id, current_user)
    try:
        terminated = registry.terminate(instance_id, reason=payload.reason if payload else "")
    except MigrationError as exc:
        raise _http_error(exc) from exc
    return TerminateOut(instance_id=instance_id, terminated=terminated)


@router.post("/jobs/{instance_id}/restart", response_model=RestartOut, status_code=202)
def restart_job(
    instance_id: str,
    background_tasks: BackgroundTasks,
    payload: RestartIn | None = None,
    db: Session = Depends(get_db),
    coordinator: JobCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(get_current_user),
):
    record = _load_owned(JobRegistry(db), instance_id, current_user)
    credentials = payload.credentials if payload else TransferCredentials()
    try:
        new_record = RestartPlanner(coordinator).restart(db, record, credentials, started_by=current_user.subject)
    except MigrationError as exc:
        raise _http_error(exc) from exc

    _dispatch(background_tasks, coordinator, new_record.instance_id, credentials)
    return RestartOut(instance_id=new_record.instance_id, restarted_from=instance_id)
