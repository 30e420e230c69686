import pytest

from cloudmigrate.models import JobRecord, JobStatus
from cloudmigrate.schemas.transfer import (
    EndpointRef,
    ItemTransferDescriptor,
    ItemTransferResult,
    JobInput,
    JobOutput,
    SelectionEntry,
    StartJobRequest,
    TransferCredentials,
)
from cloudmigrate.services.errors import InvalidStateTransition, NothingToRestart
from cloudmigrate.services.restart import RestartPlanner, reduce_selection

SRC = EndpointRef(kind="local", bucket="src")
DST = EndpointRef(kind="local", bucket="dst")


def _result(path: str, success: bool) -> ItemTransferResult:
    return ItemTransferResult(
        filename=path.rsplit("/", 1)[-1],
        source_path=path,
        dest_path=path,
        success=success,
        error_message=None if success else "failed",
    )


def _input(*paths: str, descriptors: bool = False) -> JobInput:
    return JobInput(
        job_type="local-to-local",
        source=SRC,
        destination=DST,
        selection=[SelectionEntry(path=p) for p in paths],
        descriptors=[
            ItemTransferDescriptor(
                source=SRC,
                destination=DST,
                source_path=p,
                filename=p.rsplit("/", 1)[-1],
                relative_path=p,
                dest_path=p,
                content_type="application/octet-stream",
            )
            for p in paths
        ]
        if descriptors
        else [],
    )


def _finished_record(db, job_input: JobInput, output: JobOutput, status=JobStatus.failed, parent=None) -> JobRecord:
    record = JobRecord(
        name=job_input.job_type,
        status=status,
        started_by="u1",
        parent_instance_id=parent,
        serialized_input=job_input.model_dump_json(),
        serialized_output=output.model_dump_json(),
    )
    db.add(record)
    db.commit()
    return record


class TestReduceSelection:
    def test_only_failed_entries_remain(self):
        job_input = _input("A", "B", "C")
        output = JobOutput(results=[_result("A", True), _result("B", False), _result("C", True)])

        assert [e.path for e in reduce_selection(job_input, output)] == ["B"]

    def test_recorded_descriptors_replace_folder_selection(self):
        job_input = _input("folder1/f1.jpg", "folder1/f2.jpg", "folder1/sub/f3.jpg", descriptors=True)
        job_input.selection = [SelectionEntry(path="folder1", is_folder=True)]
        output = JobOutput(
            results=[
                _result("folder1/f1.jpg", True),
                _result("folder1/f2.jpg", False),
                _result("folder1/sub/f3.jpg", True),
            ]
        )

        reduced = reduce_selection(job_input, output)

        assert len(reduced) == 1
        assert reduced[0].path == "folder1/f2.jpg"
        assert reduced[0].is_folder is False
        assert reduced[0].relative_path == "folder1/f2.jpg"

    def test_matching_is_by_basename_only(self):
        """A success for one path suppresses a different path with the same filename."""
        job_input = _input("x/photo.jpg", "y/photo.jpg")
        output = JobOutput(results=[_result("x/photo.jpg", True), _result("y/photo.jpg", False)])

        assert reduce_selection(job_input, output) == []

    def test_unattempted_entries_are_kept(self):
        job_input = _input("A", "B")
        output = JobOutput(error="EXPANSION_FAILED: listing refused")

        assert [e.path for e in reduce_selection(job_input, output)] == ["A", "B"]


class TestRestartPlanner:
    def test_plan_keeps_endpoints_and_passes_credentials(self, db):
        record = _finished_record(
            db, _input("A", "B"), JobOutput(results=[_result("A", True), _result("B", False)])
        )
        credentials = TransferCredentials(source="tok")

        request = RestartPlanner().plan(record, credentials)

        assert isinstance(request, StartJobRequest)
        assert request.source == SRC and request.destination == DST
        assert [e.path for e in request.selection] == ["B"]
        assert request.credentials.source == "tok"

    @pytest.mark.parametrize("status", [JobStatus.pending, JobStatus.running])
    def test_active_jobs_cannot_be_restarted(self, db, status):
        record = _finished_record(db, _input("A"), JobOutput(), status=status)

        with pytest.raises(InvalidStateTransition):
            RestartPlanner().plan(record, TransferCredentials())

    def test_child_units_cannot_be_restarted(self, db):
        parent = _finished_record(db, _input("A"), JobOutput())
        child = _finished_record(db, _input("A"), JobOutput(), parent=parent.instance_id)

        with pytest.raises(InvalidStateTransition):
            RestartPlanner().plan(child, TransferCredentials())

    def test_fully_successful_job_has_nothing_to_restart(self, db):
        record = _finished_record(
            db, _input("A", "B"), JobOutput(results=[_result("A", True), _result("B", True)]), status=JobStatus.completed
        )

        with pytest.raises(NothingToRestart) as excinfo:
            RestartPlanner().plan(record, TransferCredentials())

        assert excinfo.value.code == "NOTHING_TO_RESTART"

    def test_restart_submits_a_new_pending_job(self, db, coordinator):
        record = _finished_record(
            db,
            _input("A", "B", "C"),
            JobOutput(results=[_result("A", True), _result("B", False), _result("C", True)]),
            status=JobStatus.completed,
        )

        new_record = RestartPlanner(coordinator).restart(db, record, TransferCredentials())

        assert new_record.instance_id != record.instance_id
        assert new_record.status == JobStatus.pending
        assert new_record.started_by == "u1"
        new_input = JobInput.model_validate_json(new_record.serialized_input)
        assert new_input.restarted_from == record.instance_id
        assert [e.path for e in new_input.selection] == ["B"]
