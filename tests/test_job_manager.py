"""
Tests for the job record store.
"""

import pytest

from app.jobs.errors import JobForbiddenError, JobNotFoundError
from app.jobs.job_types import JobStatus, StoredOutput


class TestCreateAndRead:
    def test_create_job_starts_queued(self, manager, fake_db):
        job = manager.create_job("U1", "report.pdf", {"range": "2024-01"})

        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.owner_id == "U1"
        assert job.payload == {"range": "2024-01"}
        assert job.output_path is None
        assert len(fake_db.rows("jobs")) == 1

    def test_get_job_for_owner(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        assert manager.get_job(job.id, "U1").id == job.id

    def test_get_job_unknown_id(self, manager):
        with pytest.raises(JobNotFoundError):
            manager.get_job("missing", "U1")

    def test_get_job_other_owner_is_forbidden(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        with pytest.raises(JobForbiddenError):
            manager.get_job(job.id, "U2")

    def test_admin_read_ignores_owner(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        assert manager.get_job_admin(job.id).owner_id == "U1"

    def test_list_jobs_is_owner_scoped_and_newest_first(self, manager, fake_db):
        first = manager.create_job("U1", "report.pdf", {})
        second = manager.create_job("U1", "report.pdf", {})
        manager.create_job("U2", "report.pdf", {})
        fake_db.rows("jobs")[0]["created_at"] = "2024-01-01T00:00:00"
        fake_db.rows("jobs")[1]["created_at"] = "2024-01-02T00:00:00"

        jobs = manager.list_jobs("U1")

        assert [j.id for j in jobs] == [second.id, first.id]

    def test_list_jobs_status_filter(self, manager):
        done = manager.create_job("U1", "report.pdf", {})
        manager.create_job("U1", "report.pdf", {})
        manager.mark_done(done.id)

        jobs = manager.list_jobs("U1", JobStatus.DONE)

        assert [j.id for j in jobs] == [done.id]

    def test_find_by_ids_for_owner_drops_foreign_ids(self, manager):
        mine = manager.create_job("U1", "report.pdf", {})
        theirs = manager.create_job("U2", "report.pdf", {})

        found = manager.find_by_ids_for_owner([mine.id, theirs.id, "missing"], "U1")

        assert [j.id for j in found] == [mine.id]


class TestLifecycle:
    def test_mark_running_resets_attempt_fields(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        manager.mark_failed(job.id, "boom")

        assert manager.mark_running(job.id) is True

        job = manager.get_job(job.id, "U1")
        assert job.status == JobStatus.RUNNING
        assert job.started_at is not None
        assert job.finished_at is None
        assert job.error_message is None

    def test_mark_running_leaves_done_jobs_alone(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        manager.mark_done(job.id)

        assert manager.mark_running(job.id) is False
        assert manager.get_job(job.id, "U1").status == JobStatus.DONE

    def test_mark_running_missing_job(self, manager):
        assert manager.mark_running("missing") is False

    def test_mark_done_records_output(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        manager.mark_running(job.id)

        manager.mark_done(job.id, StoredOutput("jobs/U1/x/report.pdf", "report.pdf", "application/pdf"))

        job = manager.get_job(job.id, "U1")
        assert job.status == JobStatus.DONE
        assert job.progress == 100
        assert job.finished_at is not None
        assert job.output_path == "jobs/U1/x/report.pdf"
        assert job.has_artifact
        assert job.is_pdf

    def test_mark_failed_clears_output_fields(self, manager):
        job = manager.create_job("U1", "report.pdf", {})
        manager.mark_done(job.id, StoredOutput("jobs/U1/x/report.pdf", "report.pdf", "application/pdf"))

        manager.mark_failed(job.id, "Renderer crashed")

        job = manager.get_job(job.id, "U1")
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Renderer crashed"
        assert job.output_path is None
        assert job.output_name is None
        assert job.output_mime is None
        assert not job.has_artifact

    def test_update_progress_is_clamped(self, manager):
        job = manager.create_job("U1", "report.pdf", {})

        manager.update_progress(job.id, 150)
        assert manager.get_job(job.id, "U1").progress == 100

        manager.update_progress(job.id, -5)
        assert manager.get_job(job.id, "U1").progress == 0

    def test_update_errors_are_logged_not_raised(self, manager, fake_db):
        job = manager.create_job("U1", "report.pdf", {})
        fake_db.failing_tables.add("jobs")

        assert manager.mark_failed(job.id, "boom") is False


class TestDeletion:
    def test_delete_job_by_owner(self, manager, fake_db):
        job = manager.create_job("U1", "report.pdf", {})
        manager.delete_job(job.id, "U1")
        assert fake_db.rows("jobs") == []

    def test_delete_job_by_other_owner_is_refused(self, manager, fake_db):
        job = manager.create_job("U1", "report.pdf", {})
        with pytest.raises(JobForbiddenError):
            manager.delete_job(job.id, "U2")
        assert len(fake_db.rows("jobs")) == 1

    def test_admin_delete(self, manager, fake_db):
        job = manager.create_job("U1", "report.pdf", {})
        manager.delete_job_admin(job.id)
        assert fake_db.rows("jobs") == []
