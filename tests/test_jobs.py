import threading

import pytest

from splat_api import jobs as jobs_module
from splat_api.errors import (
    GenerationFailed,
    GenerationTimedOut,
    InvalidRequest,
    MissingArtifact,
    NotRunning,
    ServiceBusy,
    WorkspaceError,
)
from splat_api.ids import new_job_id
from splat_api.ingest import UploadedImage
from splat_api.models import JobRecord
from splat_api.storage import create_workspace, read_record, write_record


def _assert_gone(settings, job_id):
    assert not (settings.upload_dir / job_id).exists()
    assert not (settings.output_dir / job_id).exists()


def test_successful_job_reports_completed(settings, make_manager, image):
    manager = make_manager(settings)
    result = manager.run([image])

    assert result.file_name == "model.ply"
    status = manager.status(result.job_id)
    assert status.status == "completed"
    assert status.file == result.file_name
    assert status.ply_url == f"/api/ply/{result.job_id}/model.ply"
    assert status.finished_at is not None

    record = read_record(settings.output_dir / result.job_id)
    assert record.state == "completed"
    assert record.inputs == ["a.jpg"]
    assert record.artifact == "model.ply"
    assert (settings.upload_dir / result.job_id / "a.jpg").exists()


def test_failed_job_is_cleaned_up(make_settings, make_manager, image):
    settings = make_settings("fail")
    manager = make_manager(settings)
    job_id, future = manager.submit([image])

    with pytest.raises(GenerationFailed, match="could not reconstruct scene"):
        future.result(timeout=30)

    _assert_gone(settings, job_id)
    assert manager.status(job_id).status == "not_found"
    assert manager.in_flight() == 0


def test_missing_artifact_is_a_failure(make_settings, make_manager, image):
    settings = make_settings("empty")
    manager = make_manager(settings)
    job_id, future = manager.submit([image])

    with pytest.raises(MissingArtifact):
        future.result(timeout=30)
    _assert_gone(settings, job_id)


def test_zero_images_creates_nothing(settings, make_manager):
    manager = make_manager(settings)
    with pytest.raises(InvalidRequest):
        manager.submit([])
    assert not settings.upload_dir.exists()
    assert not settings.output_dir.exists()


def test_concurrent_jobs_stay_separate(settings, make_manager, png_bytes, jpeg_bytes):
    manager = make_manager(settings)
    results = []

    def submit(name, data):
        results.append(manager.run([UploadedImage(name, data)]))

    threads = [
        threading.Thread(target=submit, args=("first.png", png_bytes)),
        threading.Thread(target=submit, args=("second.jpg", jpeg_bytes)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) == 2
    assert results[0].job_id != results[1].job_id
    for result in results:
        out_dir = settings.output_dir / result.job_id
        inputs = sorted(p.name for p in (settings.upload_dir / result.job_id).iterdir())
        assert len(inputs) == 1
        assert (out_dir / "model.ply").read_bytes() == ("ply\n" + inputs[0] + "\n").encode()


def test_full_queue_is_rejected(make_settings, make_manager, image, wait_for):
    settings = make_settings("sleep", max_concurrent_jobs=1, max_queued_jobs=0)
    manager = make_manager(settings)
    job_id, future = manager.submit([image])

    with pytest.raises(ServiceBusy):
        manager.submit([image])
    # rejected submissions leave only the admitted job on disk
    assert [p.name for p in settings.output_dir.iterdir()] == [job_id]

    manager.cancel(job_id)
    with pytest.raises(GenerationTimedOut):
        future.result(timeout=30)
    assert wait_for(lambda: manager.in_flight() == 0)


def test_processing_then_cancel(make_settings, make_manager, image, wait_for):
    settings = make_settings("sleep")
    manager = make_manager(settings)
    job_id, future = manager.submit([image])

    assert manager.status(job_id).status == "processing"
    assert wait_for(lambda: manager.status(job_id).stage == "running")

    manager.cancel(job_id)
    with pytest.raises(GenerationTimedOut, match="cancelled"):
        future.result(timeout=30)

    _assert_gone(settings, job_id)
    with pytest.raises(NotRunning):
        manager.cancel(job_id)


def test_status_of_unknown_and_malformed_ids(settings, make_manager):
    manager = make_manager(settings)
    assert manager.status(new_job_id()).status == "not_found"
    assert manager.status("../../etc").status == "not_found"


def test_listing_error_is_reported_as_error(settings, make_manager, monkeypatch):
    manager = make_manager(settings)
    job_id = new_job_id()
    create_workspace(settings, job_id)

    def denied(out_dir, ext):
        raise PermissionError(13, "Permission denied", str(out_dir))

    monkeypatch.setattr(jobs_module, "resolve_artifact", denied)
    assert manager.status(job_id).status == "error"


def test_recover_orphans(settings, make_manager):
    orphan, finished, legacy = new_job_id(), new_job_id(), new_job_id()
    for job_id, state in [(orphan, "running"), (finished, "completed")]:
        _, out_dir = create_workspace(settings, job_id)
        write_record(out_dir, JobRecord(job_id=job_id, state=state, created_at=0.0))
    (settings.output_dir / finished / "model.ply").write_bytes(b"ply")
    create_workspace(settings, legacy)

    manager = make_manager(settings)
    assert manager.recover_orphans() == [orphan]

    _assert_gone(settings, orphan)
    assert manager.status(finished).status == "completed"
    assert manager.status(legacy).status == "processing"


def test_unusable_upload_root_is_a_workspace_error(settings, make_manager, image):
    settings.upload_dir.parent.mkdir(parents=True, exist_ok=True)
    settings.upload_dir.write_text("a file where the upload root should be")
    manager = make_manager(settings)

    with pytest.raises(WorkspaceError, match="cannot create workspace"):
        manager.submit([image])

    assert manager.in_flight() == 0
    assert not settings.output_dir.exists() or list(settings.output_dir.iterdir()) == []


def test_cleanup_failure_does_not_mask_generation_error(make_settings, make_manager, image, monkeypatch, caplog):
    settings = make_settings("fail")
    manager = make_manager(settings)

    def broken(settings, job_id):
        raise WorkspaceError(f"cannot remove workspace for job {job_id}: disk gone")

    monkeypatch.setattr(jobs_module, "destroy_workspace", broken)
    job_id, future = manager.submit([image])

    with pytest.raises(GenerationFailed, match="could not reconstruct scene"):
        future.result(timeout=30)
    assert f"Cleanup of job {job_id} failed" in caplog.text
    assert manager.in_flight() == 0


def test_record_never_counts_as_artifact(make_settings, make_manager, image):
    settings = make_settings("empty", artifact_ext=".json")
    manager = make_manager(settings)
    job_id, future = manager.submit([image])

    with pytest.raises(MissingArtifact):
        future.result(timeout=30)
    _assert_gone(settings, job_id)
