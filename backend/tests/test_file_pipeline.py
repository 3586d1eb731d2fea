"""Tests for the upload pipeline and the job handlers behind it."""

import asyncio

import pytest
from sqlalchemy import select

from clarity.db.models import Brain, Card, CardLink, CardType, File, JobStatus, JobType, ProcessingJob, User
from clarity.exceptions import (
    FileTooLargeError,
    ProcessingError,
    StorageQuotaExceededError,
    UnsupportedFileTypeError,
    ValidationError,
)
from clarity.services.file_pipeline import IncomingFile, UploadOptions, format_bytes


def md(name: str, text: str) -> IncomingFile:
    return IncomingFile(file_name=name, data=text.encode("utf-8"), content_type="text/markdown")


async def load(session_factory, model, **filters):
    async with session_factory() as session:
        return list((await session.execute(select(model).filter_by(**filters))).scalars())


class TestValidation:
    def test_rejects_empty_request(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.validate_request([])

    def test_rejects_too_many_files(self, pipeline):
        files = [md(f"n{i}.md", "x") for i in range(pipeline.settings.max_files_per_upload + 1)]
        with pytest.raises(ValidationError):
            pipeline.validate_request(files)

    def test_rejects_unsupported_type(self, pipeline):
        with pytest.raises(UnsupportedFileTypeError):
            pipeline.validate_file(IncomingFile(file_name="photo.png", data=b"png"))

    def test_rejects_oversized_file(self, pipeline, monkeypatch):
        monkeypatch.setattr(pipeline.settings, "max_file_size_bytes", 10)
        with pytest.raises(FileTooLargeError):
            pipeline.validate_file(md("big.md", "x" * 11))

    def test_format_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(2048) == "2.0 KB"
        assert format_bytes(5 * 1024 * 1024) == "5.0 MB"


class TestUpload:
    async def test_small_file_becomes_card_inline(
        self, db, session_factory, pipeline, job_queue, user, brain, stream, document_store
    ):
        result = await pipeline.handle_upload(
            db, user, brain, [md("notes.md", "# Notes")], UploadOptions(stream_id=stream.id), job_queue
        )

        assert result["summary"] == {"total": 1, "completed": 1, "queued": 0, "failed": 0}
        assert result["job_ids"] == []
        [uploaded] = result["files"]
        assert uploaded["status"] == "completed"

        [record] = await load(session_factory, File)
        assert record.processing_status == "completed"
        assert record.processed_at is not None
        assert document_store.objects[record.storage_key] == b"# Notes"

        [card] = await load(session_factory, Card)
        assert card.card_type == CardType.FILE.value
        assert card.title == "notes.md"
        assert card.file_id == record.id
        assert str(card.id) == uploaded["card_id"]

        async with session_factory() as session:
            brain_row = await session.get(Brain, brain.id)
            assert brain_row.storage_used == len(b"# Notes") * 2

    async def test_forced_background_file_is_processed_by_queue(
        self, db, session_factory, pipeline, job_queue, user, brain, stream, wait_for_job
    ):
        result = await pipeline.handle_upload(
            db,
            user,
            brain,
            [md("later.md", "queued content")],
            UploadOptions(stream_id=stream.id, force_background=True, processing_priority="high"),
            job_queue,
        )

        assert result["summary"]["queued"] == 1
        [job_id] = result["job_ids"]
        job = await wait_for_job(job_queue, job_id)

        assert job.status == JobStatus.COMPLETED.value
        assert job.priority == 10
        assert job.job_type == JobType.FILE_PROCESSING.value
        [card] = await load(session_factory, Card)
        assert card.content == "queued content"
        assert job.output_data["card_id"] == str(card.id)

    async def test_large_file_is_queued(self, db, pipeline, job_queue, user, brain, monkeypatch):
        monkeypatch.setattr(pipeline.settings, "inline_processing_max_bytes", 4)
        result = await pipeline.handle_upload(db, user, brain, [md("long.md", "more than four")], UploadOptions(), job_queue)
        assert result["files"][0]["status"] == "queued"

    async def test_failed_inline_processing_falls_back_to_queue(
        self, db, session_factory, pipeline, job_queue, user, brain, wait_for_job
    ):
        bad = IncomingFile(file_name="latin1.txt", data="café".encode("latin-1"))

        result = await pipeline.handle_upload(db, user, brain, [bad], UploadOptions(), job_queue)

        assert result["files"][0]["status"] == "queued"
        job = await wait_for_job(job_queue, result["job_ids"][0])
        assert job.status == JobStatus.FAILED.value
        assert job.retry_count == 3
        [record] = await load(session_factory, File)
        assert record.processing_status == "failed"
        assert "UTF-8" in record.processing_error

    async def test_one_bad_store_write_does_not_abort_upload(
        self, db, pipeline, job_queue, user, brain, document_store, monkeypatch
    ):
        original_put = document_store.put

        async def flaky_put(key, data, content_type="application/octet-stream"):
            if key.endswith("broken.md"):
                raise ProcessingError("store unavailable")
            await original_put(key, data, content_type)

        monkeypatch.setattr(document_store, "put", flaky_put)

        result = await pipeline.handle_upload(
            db, user, brain, [md("broken.md", "a"), md("fine.md", "b")], UploadOptions(), job_queue
        )

        statuses = {f["file_name"]: f["status"] for f in result["files"]}
        assert statuses == {"broken.md": "failed", "fine.md": "completed"}
        assert result["summary"]["failed"] == 1

    async def test_quota_is_enforced(self, db, session_factory, pipeline, job_queue, brain):
        async with session_factory() as session:
            small = User(name="Tiny", storage_quota=3)
            session.add(small)
            await session.commit()

        with pytest.raises(StorageQuotaExceededError):
            await pipeline.handle_upload(db, small, brain, [md("four.md", "four")], UploadOptions(), job_queue)

    async def test_links_in_imported_file_are_resolved(
        self, db, session_factory, pipeline, job_queue, user, brain, make_card
    ):
        target = await make_card("Alpha")

        await pipeline.handle_upload(
            db, user, brain, [md("refs.md", "Points at [[Alpha]]")], UploadOptions(), job_queue
        )

        for _ in range(200):
            links = await load(session_factory, CardLink)
            if links:
                break
            await asyncio.sleep(0.01)
        assert [link.target_card_id for link in links] == [target]

        [job] = await load(session_factory, ProcessingJob, job_type=JobType.LINK_RESOLUTION.value)
        assert job.user_id == user.id
        assert [j.id for j in await job_queue.list_user_jobs(user.id)] == [job.id]


class TestStorageCalculation:
    async def test_recalculate_corrects_drift(self, db, session_factory, job_queue, brain, make_card, wait_for_job):
        await make_card("A", "12345")
        async with session_factory() as session:
            row = await session.get(Brain, brain.id)
            row.storage_used = 999
            await session.commit()

        job_id = await job_queue.enqueue(
            JobType.STORAGE_CALCULATION, {"brain_id": str(brain.id)}, brain_id=brain.id
        )
        job = await wait_for_job(job_queue, job_id)

        assert job.status == JobStatus.COMPLETED.value
        assert job.output_data["previous_bytes"] == 999
        assert job.output_data["storage_used"] == 5
        async with session_factory() as session:
            assert (await session.get(Brain, brain.id)).storage_used == 5
