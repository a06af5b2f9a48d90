"""Tests for reference image uploads and the per-session upload tracker."""

import pytest
from helpers import PNG_BYTES

from imagestudio.models.stored_image import ImageKind
from imagestudio.services.exceptions import ErrorKind, InvalidInputError
from imagestudio.services.files import MB
from imagestudio.services.reference_uploads import (
    ReferenceImageTracker,
    ReferenceUploadCoordinator,
)
from imagestudio.services.storage.client import PutObjectResult


@pytest.fixture
def coordinator(blob_client, settings) -> ReferenceUploadCoordinator:
    return ReferenceUploadCoordinator(blob_client, settings)


@pytest.fixture
def tracker(coordinator) -> ReferenceImageTracker:
    return ReferenceImageTracker(coordinator)


@pytest.mark.asyncio
class TestUploadReferences:
    async def test_every_file_gets_a_distinct_key(self, coordinator, blob_backend, make_reference):
        files = [make_reference(name=f"ref{i}.png") for i in range(5)]

        result = await coordinator.upload_references(files)

        assert len(result.uploaded) == 5
        assert result.failed == []
        keys = result.storage_keys
        assert len(set(keys)) == 5
        assert all(key.startswith("reference_image/") for key in keys)
        assert all("-batch-" in key for key in keys)
        assert all(key in blob_backend for key in keys)

    async def test_results_keep_input_order(self, coordinator, make_reference):
        files = [make_reference(name=f"ref{i}.png") for i in range(3)]

        result = await coordinator.upload_references(files)

        assert [image.original_name for image in result.uploaded] == [
            "ref0.png",
            "ref1.png",
            "ref2.png",
        ]
        assert all(
            f"-batch-{i}-" in image.storage_key for i, image in enumerate(result.uploaded)
        )

    async def test_oversized_file_fails_alone(self, coordinator, make_reference):
        files = [make_reference(name=f"ok{i}.png") for i in range(4)]
        files.insert(2, make_reference(name="big.png", data=b"\x00" * (5 * MB + 1)))

        result = await coordinator.upload_references(files)

        assert len(result.uploaded) == 4
        assert len(result.failed) == 1
        failed = result.failed[0]
        assert failed.file_name == "big.png"
        assert failed.error_kind == ErrorKind.VALIDATION_FAILED
        assert "exceeds maximum allowed size of 5MB" in failed.error

    async def test_serialized_files_accepted(self, coordinator, make_reference):
        serialized = make_reference(name="wire.webp", content_type="image/webp").serialize()

        result = await coordinator.upload_references([serialized])

        assert result.uploaded[0].storage_key.endswith(".webp")
        assert result.uploaded[0].format.value == "image/webp"

    async def test_upload_metadata(self, coordinator, blob_backend, make_reference):
        result = await coordinator.upload_references([make_reference(name="cat.png")])

        stored = await blob_backend.get(result.storage_keys[0])
        assert stored.data == PNG_BYTES
        assert stored.content_type == "image/png"
        metadata = stored.custom_metadata
        assert metadata["originalName"] == "cat.png"
        assert metadata["uploadType"] == "reference_batch"
        assert metadata["fileSize"] == str(len(PNG_BYTES))
        assert metadata["batchIndex"] == "0"
        assert metadata["batchTimestamp"].isdigit()
        assert "uploadedAt" in metadata

    async def test_more_than_max_rejected(self, coordinator, blob_backend, make_reference):
        files = [make_reference(name=f"ref{i}.png") for i in range(6)]

        with pytest.raises(InvalidInputError, match="Maximum 5 reference images"):
            await coordinator.upload_references(files)

        assert len(blob_backend) == 0

    async def test_storage_failure_reported_per_file(
        self, coordinator, blob_client, make_reference
    ):
        original_put = blob_client.put_object

        async def flaky_put(key, data, content_type="image/png", custom_metadata=None):
            if custom_metadata["originalName"] == "bad.png":
                return PutObjectResult(success=False, key=key, error="write refused")
            return await original_put(key, data, content_type, custom_metadata)

        blob_client.put_object = flaky_put
        files = [make_reference(name="good.png"), make_reference(name="bad.png")]

        result = await coordinator.upload_references(files)

        assert [image.original_name for image in result.uploaded] == ["good.png"]
        assert result.failed[0].file_name == "bad.png"
        assert result.failed[0].error_kind == ErrorKind.STORAGE_FAILED
        assert "write refused" in result.failed[0].error

    async def test_single_upload(self, coordinator, make_reference):
        image = await coordinator.upload_reference(
            make_reference(name="solo.jpg", content_type="image/jpeg")
        )

        assert image.kind == ImageKind.REFERENCE
        assert image.storage_key.endswith(".jpg")

    async def test_single_upload_raises_on_invalid_file(self, coordinator, make_reference):
        with pytest.raises(InvalidInputError, match="Unsupported file format"):
            await coordinator.upload_reference(
                make_reference(name="a.bmp", content_type="image/bmp")
            )


@pytest.mark.asyncio
class TestReferenceImageTracker:
    async def test_upload_runs_in_background(self, tracker, make_reference):
        tracker.start_upload([make_reference(name="a.png"), make_reference(name="b.png")])

        assert tracker.is_uploading
        await tracker.wait()

        assert not tracker.is_uploading
        assert len(tracker.reference_image_keys) == 2
        assert tracker.last_error is None

    async def test_invalid_files_skipped_before_upload(self, tracker, blob_backend, make_reference):
        tracker.start_upload(
            [
                make_reference(name="a.png"),
                make_reference(name="big.png", data=b"\x00" * (5 * MB + 1)),
                make_reference(name="c.png"),
            ]
        )
        await tracker.wait()

        assert len(tracker.reference_image_keys) == 2
        assert len(blob_backend) == 2
        assert [f.file_name for f in tracker.failed_uploads] == ["big.png"]
        assert tracker.last_error == "1 of 3 reference images failed to upload"

    async def test_no_valid_files_clears_references(self, tracker, make_reference):
        tracker.start_upload([make_reference(name="a.png")])
        await tracker.wait()
        assert len(tracker.reference_image_keys) == 1

        tracker.start_upload([make_reference(name="a.bmp", content_type="image/bmp")])

        assert not tracker.is_uploading
        assert tracker.reference_image_keys == []
        assert "Unsupported file format" in tracker.last_error

    async def test_empty_selection_clears_everything(self, tracker, make_reference):
        tracker.start_upload([make_reference()])
        await tracker.wait()

        tracker.start_upload([])

        assert tracker.reference_image_keys == []
        assert tracker.failed_uploads == []
        assert tracker.last_error is None

    async def test_new_upload_supersedes_in_flight_one(self, tracker, make_reference):
        tracker.start_upload([make_reference(name="old.png")])
        tracker.start_upload([make_reference(name="new1.png"), make_reference(name="new2.png")])
        await tracker.wait()

        assert [image.original_name for image in tracker.reference_images] == [
            "new1.png",
            "new2.png",
        ]

    async def test_too_many_files_sets_error(self, tracker, make_reference):
        tracker.start_upload([make_reference(name=f"r{i}.png") for i in range(6)])
        await tracker.wait()

        assert tracker.reference_image_keys == []
        assert "Maximum 5 reference images" in tracker.last_error

    async def test_clear(self, tracker, make_reference):
        tracker.start_upload([make_reference()])
        await tracker.wait()

        tracker.clear()

        assert tracker.reference_images == []
        assert not tracker.is_uploading
