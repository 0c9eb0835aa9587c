"""Tests for the upload-side entrypoints."""

from unittest.mock import patch

import pytest

from pixelqueue.errors import DecodeError, EncodeError, PipelineError, PlanningError, StorageError
from pixelqueue.ingest import (
    get_queue_stats,
    ingest_image,
    presigned_variants,
    process_queue,
    request_variant,
    resubmit_failed,
    verify_job_outputs,
)
from pixelqueue.queue import FileStatus, JobStatus
from pixelqueue.transcoder import transcode

from conftest import SCENARIO_SETTINGS, encode_image


def ingest(store, objects, data, settings=SCENARIO_SETTINGS, **kwargs):
    return ingest_image(store, objects, data, "Holiday Photo.JPG", "p1", "Shop", settings, **kwargs)


class TestIngestImage:
    """Upload acceptance: store, record, plan, enqueue."""

    def test_creates_file_and_job(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes, upload_id="abc123")

        file = result.file
        assert file.storage_key == "shop-p1/images/original/abc123.jpg"
        assert file.mime_type == "image/jpeg"
        assert (file.width, file.height) == (1000, 500)
        assert file.size == len(jpeg_bytes)
        assert file.status == FileStatus.UPLOADED.value
        assert file.planned_variants == {
            "medium": "shop-p1/images/medium/abc123.jpg",
            "thumb": "shop-p1/images/thumb/abc123.webp",
        }
        assert objects.get(file.storage_key) == jpeg_bytes

        assert result.job.status == JobStatus.PENDING.value
        assert result.job.payload.variant_names() == ["medium", "thumb"]
        assert store.get_file("abc123") == file

    def test_filename_never_in_keys(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes)
        keys = [result.file.storage_key, *result.file.planned_variants.values()]
        assert not any("Holiday" in key or "Photo" in key for key in keys)
        assert result.file.filename == "Holiday Photo.JPG"

    def test_same_filename_twice_gets_distinct_keys(self, store, objects, jpeg_bytes):
        first = ingest(store, objects, jpeg_bytes)
        second = ingest(store, objects, jpeg_bytes)

        assert first.file.id != second.file.id
        assert first.file.storage_key != second.file.storage_key

    def test_no_variants_means_no_job(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes, settings={})
        assert result.job is None
        assert store.count_by_status()["pending"] == 0

    def test_png_source(self, store, objects):
        data = encode_image(size=(64, 32), fmt="PNG")
        result = ingest(store, objects, data, settings={"copy": {}}, upload_id="png1")

        assert result.file.mime_type == "image/png"
        assert result.file.storage_key.endswith("/png1.png")
        assert result.file.planned_variants == {"copy": "shop-p1/images/copy/png1.png"}

    def test_rejects_undecodable_upload(self, store, objects):
        """Validation happens before anything is written."""
        with pytest.raises(DecodeError):
            ingest(store, objects, b"not an image", upload_id="bad1")
        assert store.get_file("bad1") is None
        assert not list(objects.root.rglob("*.*"))

    def test_rejects_bad_settings(self, store, objects, jpeg_bytes):
        with pytest.raises(PlanningError):
            ingest(store, objects, jpeg_bytes, settings={"thumb": {"fit": "cover"}}, upload_id="x1")
        assert store.get_file("x1") is None
        assert not objects.exists("shop-p1/images/original/x1.jpg")

    def test_storage_failure_creates_nothing(self, store, objects, jpeg_bytes):
        with patch.object(objects, "put", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                ingest(store, objects, jpeg_bytes, upload_id="x2")
        assert store.get_file("x2") is None

    def test_failed_record_removes_original(self, store, objects, jpeg_bytes):
        """A record that cannot be created does not leave the blob behind."""
        with patch.object(store, "create_file", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                ingest(store, objects, jpeg_bytes, upload_id="x3")
        assert not objects.exists("shop-p1/images/original/x3.jpg")


class TestRequestVariant:
    """Lazy processing on first read."""

    def test_ready_variant(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes)
        process_queue(store, objects, show_progress=False)

        lookup = request_variant(store, result.file.id, "thumb", SCENARIO_SETTINGS)
        assert lookup.ready
        assert lookup.key == result.file.planned_variants["thumb"]
        assert lookup.job is None

    def test_pending_variant_returns_active_job(self, store, objects, jpeg_bytes):
        """No duplicate work while the upload job is still queued."""
        result = ingest(store, objects, jpeg_bytes)

        lookup = request_variant(store, result.file.id, "medium", SCENARIO_SETTINGS)
        assert not lookup.ready
        assert lookup.job.id == result.job.id
        assert lookup.key == result.file.storage_key
        assert len(store.list_jobs(file_id=result.file.id)) == 1

    def test_new_variant_added_to_settings(self, store, objects, jpeg_bytes):
        """A variant defined after upload is produced on first request."""
        result = ingest(store, objects, jpeg_bytes, upload_id="abc123")
        process_queue(store, objects, show_progress=False)

        settings = {"variants": dict(SCENARIO_SETTINGS["variants"], hero={"format": "png", "width": 200})}
        lookup = request_variant(store, result.file.id, "hero", settings)
        assert lookup.job.payload.tasks[0].storage_key == "shop-p1/images/hero/abc123.png"

        process_queue(store, objects, show_progress=False)
        file = store.get_file(result.file.id)
        assert file.variants["hero"] == "shop-p1/images/hero/abc123.png"
        assert file.status == FileStatus.READY.value

    def test_format_change_after_failed_variant(self, store, objects, jpeg_bytes):
        """A variant requested after its format changed is recorded at its new key."""
        result = ingest(store, objects, jpeg_bytes, upload_id="abc123")

        def fail_thumb(source, task):
            if task.name == "thumb":
                raise EncodeError("encoder exploded", variant=task.name)
            return transcode(source, task)

        with patch("pixelqueue.queue.worker.transcode", side_effect=fail_thumb):
            process_queue(store, objects, show_progress=False)

        variants = dict(SCENARIO_SETTINGS["variants"])
        variants["thumb"] = dict(variants["thumb"], format="png")
        lookup = request_variant(store, result.file.id, "thumb", {"variants": variants})
        process_queue(store, objects, show_progress=False)

        file = store.get_file(result.file.id)
        assert file.planned_variants["thumb"] == "shop-p1/images/thumb/abc123.png"
        assert file.variants["thumb"] == "shop-p1/images/thumb/abc123.png"
        assert file.status == FileStatus.READY.value
        assert objects.exists(lookup.job.payload.tasks[0].storage_key)

    def test_unknown_file(self, store):
        with pytest.raises(PipelineError, match="Unknown file"):
            request_variant(store, "missing", "thumb", SCENARIO_SETTINGS)

    def test_undefined_variant(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes)
        with pytest.raises(PlanningError, match="variant 'poster'"):
            request_variant(store, result.file.id, "poster", SCENARIO_SETTINGS)

    def test_unknown_size_defers_planning(self, store, objects, make_file, jpeg_bytes):
        file = make_file(store, width=None, height=None)
        objects.put(file.storage_key, jpeg_bytes, "image/jpeg")

        lookup = request_variant(store, file.id, "thumb", SCENARIO_SETTINGS)
        assert lookup.job.payload.tasks == []
        assert list(lookup.job.payload.variant_defs) == ["thumb"]

        process_queue(store, objects, show_progress=False)
        assert store.get_file(file.id).variants == {
            "thumb": f"shop-p1/images/thumb/{file.id}.webp"
        }


class TestOperatorTools:
    """Queue processing, stats, resubmission and verification."""

    def test_process_queue_stats(self, store, objects, jpeg_bytes):
        ingest(store, objects, jpeg_bytes)
        ingest(store, objects, jpeg_bytes)

        stats = process_queue(store, objects, concurrency=2, show_progress=False)

        assert stats["completed"] == 2
        assert stats["failed"] == 0
        assert stats["claim_lost"] == 0
        assert stats["total_duration"] > 0

    def test_get_queue_stats(self, store, objects, jpeg_bytes):
        ingest(store, objects, jpeg_bytes)
        stats = get_queue_stats(store)
        assert stats["pending"] == 1
        assert stats["total"] == 1

    def test_resubmit_failed_after_fix(self, store, objects, jpeg_bytes):
        """An operator resubmission reruns a failed job from scratch."""
        result = ingest(store, objects, jpeg_bytes)
        with patch.object(objects, "get", side_effect=StorageError("offline")):
            stats = process_queue(store, objects, show_progress=False)
        assert stats["failed"] == 1
        assert store.get_file(result.file.id).status == FileStatus.ERROR.value

        created = resubmit_failed(store)
        assert len(created) == 1
        process_queue(store, objects, show_progress=False)
        assert store.get_file(result.file.id).status == FileStatus.READY.value

    def test_resubmit_unknown_job(self, store):
        assert resubmit_failed(store, "nope") == []

    def test_verify_job_outputs(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes)
        process_queue(store, objects, show_progress=False)

        ok, problems = verify_job_outputs(store, objects, result.job.id)
        assert ok and problems == []

        objects.put(result.file.planned_variants["thumb"], b"tampered", "image/webp")
        ok, problems = verify_job_outputs(store, objects, result.job.id)
        assert not ok
        assert problems == ["thumb: content does not match recorded digest"]

        objects.delete(result.file.planned_variants["medium"])
        ok, problems = verify_job_outputs(store, objects, result.job.id)
        assert len(problems) == 2

    def test_verify_unknown_job(self, store, objects):
        with pytest.raises(PipelineError):
            verify_job_outputs(store, objects, "missing")

    def test_presigned_variants(self, store, objects, jpeg_bytes):
        result = ingest(store, objects, jpeg_bytes)
        process_queue(store, objects, show_progress=False)
        file = store.get_file(result.file.id)

        urls = presigned_variants(file, objects)
        assert set(urls) == {"original", "medium", "thumb"}
        assert all(url.startswith("file://") for url in urls.values())
