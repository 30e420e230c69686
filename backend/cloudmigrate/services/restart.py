import logging

from sqlalchemy.orm import Session

from cloudmigrate.models import JobRecord, JobStatus
from cloudmigrate.schemas.transfer import JobInput, JobOutput, SelectionEntry, StartJobRequest, TransferCredentials
from cloudmigrate.services.coordinator import JobCoordinator
from cloudmigrate.services.errors import InvalidStateTransition, NothingToRestart
from cloudmigrate.services.expander import basename

logger = logging.getLogger(__name__)

RESTARTABLE_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.terminated, JobStatus.canceled})


def succeeded_basenames(output: JobOutput) -> set[str]:
    return {basename(r.filename) for r in output.results if r.success}


def reduce_selection(job_input: JobInput, output: JobOutput) -> list[SelectionEntry]:
    """Drop every entry whose basename already succeeded.

    When the job got as far as recording its descriptors the reduced selection is
    built from those leaf items, keeping their destination layout. Otherwise the
    original selection entries are filtered.

    Matching is by basename only: two source paths that share a filename are
    indistinguishable here, so a success of one suppresses the other on restart.
    """
    done = succeeded_basenames(output)
    if job_input.descriptors:
        return [
            SelectionEntry(path=d.source_path, is_folder=False, relative_path=d.relative_path)
            for d in job_input.descriptors
            if basename(d.filename) not in done
        ]
    return [entry for entry in job_input.selection if basename(entry.path.rstrip("/")) not in done]


class RestartPlanner:
    def __init__(self, coordinator: JobCoordinator | None = None):
        self.coordinator = coordinator or JobCoordinator()

    def plan(self, record: JobRecord, credentials: TransferCredentials) -> StartJobRequest:
        if record.parent_instance_id is not None:
            raise InvalidStateTransition(
                f"Job {record.instance_id} is a child unit; restart its parent {record.parent_instance_id} instead"
            )
        if record.status not in RESTARTABLE_STATUSES:
            raise InvalidStateTransition(f"Job {record.instance_id} is {record.status.value}; it cannot be restarted")

        job_input = JobInput.model_validate_json(record.serialized_input)
        output = JobOutput.model_validate_json(record.serialized_output or "{}")
        selection = reduce_selection(job_input, output)
        if not selection:
            raise NothingToRestart(f"Every item of job {record.instance_id} already succeeded")

        return StartJobRequest(
            source=job_input.source,
            destination=job_input.destination,
            selection=selection,
            credentials=credentials,
        )

    def restart(
        self, db: Session, record: JobRecord, credentials: TransferCredentials, *, started_by: str | None = None
    ) -> JobRecord:
        request = self.plan(record, credentials)
        job_input = JobInput.model_validate_json(record.serialized_input)
        new_record = self.coordinator.submit(
            db,
            job_input.job_type,
            request,
            started_by=started_by or record.started_by,
            restarted_from=record.instance_id,
        )
        logger.info(
            "Restarted job %s as %s with %d remaining entries",
            record.instance_id,
            new_record.instance_id,
            len(request.selection),
        )
        return new_record
