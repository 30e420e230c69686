import logging

from cloudmigrate.models import JobRecord, JobStatus
from cloudmigrate.schemas.transfer import JobOutput, TransferCredentials
from cloudmigrate.services.coordinator import JobCoordinator
from cloudmigrate.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_transfer_job_inline(instance_id: str, credentials: dict, coordinator: JobCoordinator | None = None) -> None:
    coordinator = coordinator or JobCoordinator()
    try:
        coordinator.run(instance_id, TransferCredentials.model_validate(credentials))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Transfer job %s crashed", instance_id)
        db = coordinator.session_factory()
        try:
            job = db.get(JobRecord, instance_id)
            if job and job.status in (JobStatus.pending, JobStatus.running):
                job.status = JobStatus.failed
                job.serialized_output = JobOutput(error=f"WORKER_ERROR: {exc}").model_dump_json()
                db.commit()
        finally:
            db.close()


@celery_app.task(name="transfers.run_job")
def run_transfer_job(instance_id: str, credentials: dict):
    run_transfer_job_inline(instance_id, credentials)
