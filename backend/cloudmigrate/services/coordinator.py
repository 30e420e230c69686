import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from cloudmigrate.core.config import settings
from cloudmigrate.db.session import SessionLocal
from cloudmigrate.models import JobCancellation, JobRecord, JobStatus, can_transition
from cloudmigrate.schemas.transfer import (
    ChildJobInput,
    ItemTransferDescriptor,
    ItemTransferResult,
    JobInput,
    JobOutput,
    JobParameters,
    JobProgress,
    StartJobRequest,
    TransferCredentials,
)
from cloudmigrate.services.errors import InvalidStateTransition, MigrationError, PreparationFailure
from cloudmigrate.services.executor import TransferExecutor
from cloudmigrate.services.expander import expand_selection
from cloudmigrate.services.preparer import prepare_items
from cloudmigrate.services.storage import AdapterFactory, build_adapter, ensure_credential, provider_kinds

logger = logging.getLogger(__name__)

CHILD_NAME_PREFIX = "copy:"


def job_type_for(source_kind: str, destination_kind: str) -> str:
    return f"{source_kind}-to-{destination_kind}"


def parse_job_type(job_type: str) -> tuple[str, str]:
    source_kind, sep, destination_kind = job_type.partition("-to-")
    kinds = provider_kinds()
    if not sep or source_kind not in kinds or destination_kind not in kinds:
        raise PreparationFailure(f"Unknown job type '{job_type}'", code="UNKNOWN_JOB_TYPE")
    return source_kind, destination_kind


class JobCoordinator:
    """Drives one transfer job: expand, prepare, bounded fan-out, aggregate.

    The coordinator is the only writer of the JobRecords it runs. Cancellation is
    cooperative: the control plane files a ``JobCancellation`` row and the
    coordinator looks for it before each checkpoint batch and before each child
    unit. Transfers already handed to the pool always run to completion.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        adapter_factory: AdapterFactory = build_adapter,
        executor: TransferExecutor | None = None,
        concurrency: int | None = None,
        checkpoint_batch_size: int | None = None,
        child_batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory
        self.executor = executor or TransferExecutor(adapter_factory)
        self.concurrency = concurrency or settings.transfer_concurrency
        self.checkpoint_batch_size = checkpoint_batch_size or settings.checkpoint_batch_size
        self.child_batch_size = child_batch_size or settings.child_batch_size

    # ---- submission ----

    def submit(
        self,
        db: Session,
        job_type: str,
        request: StartJobRequest,
        *,
        started_by: str | None = None,
        restarted_from: str | None = None,
    ) -> JobRecord:
        source_kind, destination_kind = parse_job_type(job_type)
        if (request.source.kind, request.destination.kind) != (source_kind, destination_kind):
            raise PreparationFailure(
                f"Job type '{job_type}' does not match {request.source.kind} -> {request.destination.kind}",
                code="JOB_TYPE_MISMATCH",
            )
        ensure_credential(request.source, request.credentials.source)
        ensure_credential(request.destination, request.credentials.destination)

        job_input = JobInput(
            job_type=job_type,
            source=request.source,
            destination=request.destination,
            selection=request.selection,
            started_by=started_by,
            restarted_from=restarted_from,
        )
        record = JobRecord(
            name=job_type,
            status=JobStatus.pending,
            started_by=started_by,
            serialized_input=job_input.model_dump_json(),
            serialized_custom_status=JobProgress().model_dump_json(),
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info("Submitted %s job %s with %d selection entries", job_type, record.instance_id, len(request.selection))
        return record

    # ---- state helpers ----

    def _transition(
        self,
        db: Session,
        record: JobRecord,
        status: JobStatus,
        *,
        output: JobOutput | None = None,
        progress: JobProgress | None = None,
    ) -> bool:
        if not can_transition(record.status, status):
            raise InvalidStateTransition(f"{record.status.value} -> {status.value} is not allowed")
        record.status = status
        if output is not None:
            record.serialized_output = output.model_dump_json()
        if progress is not None:
            record.serialized_custom_status = progress.model_dump_json()
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            db.refresh(record)
            logger.warning(
                "Job %s changed concurrently; it is now %s, wanted %s",
                record.instance_id,
                record.status.value,
                status.value,
            )
            return False
        return True

    def _checkpoint(self, db: Session, record: JobRecord, progress: JobProgress) -> None:
        record.serialized_custom_status = progress.model_dump_json()
        db.commit()

    def _cancel_requested(self, db: Session, instance_ids: list[str]) -> bool:
        return (
            db.query(JobCancellation.instance_id).filter(JobCancellation.instance_id.in_(instance_ids)).first()
            is not None
        )

    def _cancel_pending(self, db: Session, children: list[tuple[JobRecord, list[ItemTransferDescriptor]]]) -> None:
        for child, _ in children:
            if child.status == JobStatus.pending:
                self._transition(db, child, JobStatus.canceled)

    def _fail(self, db: Session, record: JobRecord, message: str, results: list[ItemTransferResult]) -> None:
        db.rollback()
        db.refresh(record)
        if record.is_terminal:
            return
        progress = JobProgress.model_validate_json(record.serialized_custom_status or "{}")
        progress.completed = len(results)
        progress.error = message
        self._transition(
            db,
            record,
            JobStatus.failed,
            output=JobOutput(results=results, error=message),
            progress=progress,
        )
        logger.error("Job %s failed: %s", record.instance_id, message)

    # ---- run ----

    def run(self, instance_id: str, credentials: TransferCredentials) -> None:
        db = self.session_factory()
        try:
            record = db.get(JobRecord, instance_id)
            if record is None:
                logger.warning("Job %s not found; nothing to run", instance_id)
                return
            if record.status != JobStatus.pending:
                logger.warning("Job %s is %s; not starting it", instance_id, record.status.value)
                return
            if not self._transition(db, record, JobStatus.running):
                return
            self._run_job(db, record, credentials)
        finally:
            db.close()

    def _run_job(self, db: Session, record: JobRecord, credentials: TransferCredentials) -> None:
        results: list[ItemTransferResult] = []
        try:
            job_input = JobInput.model_validate_json(record.serialized_input)
            params = JobParameters(
                source=job_input.source,
                destination=job_input.destination,
                source_credential=credentials.source,
                destination_credential=credentials.destination,
            )
            source = self.adapter_factory(job_input.source, credentials.source)
            items = expand_selection(job_input.selection, source)
            descriptors = prepare_items(items, params)

            job_input.descriptors = descriptors
            record.serialized_input = job_input.model_dump_json()
            self._checkpoint(db, record, JobProgress(total=len(descriptors)))

            if len(descriptors) > self.child_batch_size:
                cancelled = self._run_children(db, record, job_input.job_type, descriptors, results)
            else:
                cancelled = self._fan_out(db, record, descriptors, results)
        except MigrationError as exc:
            self._fail(db, record, f"{exc.code}: {exc.detail}", results)
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while running job %s", record.instance_id)
            self._fail(db, record, str(exc), results)
            return

        failed = sum(1 for r in results if not r.success)
        output = JobOutput(results=results)
        progress = JobProgress(
            completed=len(results),
            total=len(descriptors),
            last_file=results[-1].filename if results else "",
        )
        status = JobStatus.terminated if cancelled else JobStatus.completed
        self._transition(db, record, status, output=output, progress=progress)
        logger.info(
            "Job %s %s: %d/%d items transferred, %d failed",
            record.instance_id,
            status.value,
            len(results) - failed,
            len(descriptors),
            failed,
        )

    def _fan_out(
        self,
        db: Session,
        record: JobRecord,
        descriptors: list[ItemTransferDescriptor],
        results: list[ItemTransferResult],
        *,
        parent: JobRecord | None = None,
        parent_progress: JobProgress | None = None,
    ) -> bool:
        """Run descriptors through a bounded pool, appending results as they finish.

        Returns True when a cancellation request stopped the dispatch early.
        """
        if not descriptors:
            return False

        watched = [record.instance_id] + ([parent.instance_id] if parent is not None else [])
        total = len(descriptors)
        width = min(self.concurrency, total)
        queue = iter(descriptors)
        pending: dict[Future, ItemTransferDescriptor] = {}
        submitted = 0
        cancelled = False

        with ThreadPoolExecutor(max_workers=width) as pool:
            while True:
                while not cancelled and len(pending) < width:
                    descriptor = next(queue, None)
                    if descriptor is None:
                        break
                    if submitted % self.checkpoint_batch_size == 0 and self._cancel_requested(db, watched):
                        logger.info("Cancellation requested for job %s after %d items", record.instance_id, submitted)
                        cancelled = True
                        break
                    pending[pool.submit(self.executor.execute, descriptor)] = descriptor
                    submitted += 1

                if not pending:
                    break

                finished, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in finished:
                    descriptor = pending.pop(future)
                    try:
                        result = future.result()
                    except Exception as exc:  # noqa: BLE001
                        result = ItemTransferResult(
                            filename=descriptor.filename,
                            source_path=descriptor.source_path,
                            dest_path=descriptor.dest_path,
                            success=False,
                            error_message=str(exc),
                        )
                    results.append(result)
                    self._checkpoint(
                        db,
                        record,
                        JobProgress(completed=len(results), total=total, last_file=descriptor.filename),
                    )
                    if parent is not None and parent_progress is not None:
                        parent_progress.completed += 1
                        parent_progress.last_file = descriptor.filename
                        if parent_progress.completed % self.checkpoint_batch_size == 0:
                            self._checkpoint(db, parent, parent_progress)

        return cancelled

    def _run_children(
        self,
        db: Session,
        parent: JobRecord,
        job_type: str,
        descriptors: list[ItemTransferDescriptor],
        results: list[ItemTransferResult],
    ) -> bool:
        size = self.child_batch_size
        children: list[tuple[JobRecord, list[ItemTransferDescriptor]]] = []
        for start in range(0, len(descriptors), size):
            chunk = descriptors[start : start + size]
            child_input = ChildJobInput(job_type=job_type, parent_instance_id=parent.instance_id, descriptors=chunk)
            child = JobRecord(
                name=f"{CHILD_NAME_PREFIX}{job_type}",
                status=JobStatus.pending,
                started_by=parent.started_by,
                parent_instance_id=parent.instance_id,
                serialized_input=child_input.model_dump_json(),
                serialized_custom_status=JobProgress(total=len(chunk)).model_dump_json(),
            )
            db.add(child)
            children.append((child, chunk))
        db.commit()
        logger.info("Split job %s into %d child units of up to %d items", parent.instance_id, len(children), size)

        parent_progress = JobProgress(total=len(descriptors))
        for index, (child, chunk) in enumerate(children):
            if self._cancel_requested(db, [parent.instance_id]):
                self._cancel_pending(db, children[index:])
                return True
            if self._cancel_requested(db, [child.instance_id]):
                self._transition(db, child, JobStatus.terminated)
                continue
            if not self._transition(db, child, JobStatus.running):
                continue

            child_results: list[ItemTransferResult] = []
            try:
                cancelled = self._fan_out(
                    db, child, chunk, child_results, parent=parent, parent_progress=parent_progress
                )
            except Exception as exc:
                results.extend(child_results)
                self._fail(db, child, str(exc), child_results)
                self._cancel_pending(db, children[index + 1 :])
                raise

            results.extend(child_results)
            output = JobOutput(results=child_results)
            progress = JobProgress(
                completed=len(child_results),
                total=len(chunk),
                last_file=child_results[-1].filename if child_results else "",
            )
            self._transition(
                db, child, JobStatus.terminated if cancelled else JobStatus.completed, output=output, progress=progress
            )
            self._checkpoint(db, parent, parent_progress)
            if cancelled and self._cancel_requested(db, [parent.instance_id]):
                self._cancel_pending(db, children[index + 1 :])
                return True

        return False
