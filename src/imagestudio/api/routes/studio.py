"""Studio API endpoints.

This module exposes the generation workflow of one client session:
- POST /api/studio/generations - Start a batch (returns immediately)
- GET /api/studio/generations - Current slots and completed images
- POST /api/studio/generations/{slot_id}/cancel - Cancel a generating slot
- POST /api/studio/generations/{slot_id}/retry - Retry a finished slot
- DELETE /api/studio/generations/completed - Drop finished slots
- DELETE /api/studio/generations - Drop all slots, cancelling in-flight requests
- POST/GET/DELETE /api/studio/references - Background reference uploads
- GET /api/studio/images/view - Display-ready view of a stored object
- GET /api/studio/gallery - Slots merged with resolved view URLs
- GET /api/studio/objects - Blob store listing

The session is selected by the ``X-Studio-Session`` header.
"""

from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from imagestudio.api.dependencies import (
    get_blob_client,
    get_execution_counter,
    get_settings,
    get_studio_session,
    get_view_resolver,
)
from imagestudio.core.config import Settings
from imagestudio.models.results import FailedUpload
from imagestudio.models.slot import GenerationSlot, InvalidStateTransition, SlotNotFoundError
from imagestudio.models.stored_image import StoredImage
from imagestudio.services.analytics import ExecutionCounter
from imagestudio.services.display import GalleryItem, compose_gallery
from imagestudio.services.exceptions import ErrorKind, InvalidInputError
from imagestudio.services.files import SerializedFile
from imagestudio.services.generation.validation import validate_reference_count
from imagestudio.services.storage.client import BlobStoreClient, ListObjectsResult
from imagestudio.services.storage.view_resolver import SignedViewResolver, ViewResult
from imagestudio.workers.generation_orchestrator import BatchGenerationRequest
from imagestudio.workers.sessions import StudioSession

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/studio", tags=["studio"])

SessionDep = Annotated[StudioSession, Depends(get_studio_session)]
ResolverDep = Annotated[SignedViewResolver, Depends(get_view_resolver)]


# Request/Response Models


class StartGenerationRequest(BaseModel):
    """Request model for starting a generation batch."""

    prompt: str = Field(..., description="Text prompt shared by every image in the batch")
    image_count: int = Field(default=1, description="Number of images to generate (1-5)")
    api_key: str = Field(..., description="Google API key", repr=False)
    reference_image_keys: Optional[list[str]] = Field(
        default=None,
        description="Stored reference keys; defaults to the session's uploaded references",
    )
    reference_images: list[SerializedFile] = Field(
        default_factory=list, description="Inline reference images as data URLs"
    )


class StartGenerationResponse(BaseModel):
    batch_id: str
    slot_ids: list[str]


class SlotsResponse(BaseModel):
    slots: list[GenerationSlot]
    completed_images: list[StoredImage]
    has_active_generations: bool


class ClearResponse(BaseModel):
    removed: int


class UploadReferencesRequest(BaseModel):
    files: list[SerializedFile] = Field(default_factory=list)


class ReferencesResponse(BaseModel):
    reference_images: list[StoredImage]
    reference_image_keys: list[str]
    failed_uploads: list[FailedUpload]
    is_uploading: bool
    last_error: Optional[str] = None


class GalleryResponse(BaseModel):
    items: list[GalleryItem]
    has_active_generations: bool


def _slots_response(session: StudioSession) -> SlotsResponse:
    orchestrator = session.orchestrator
    return SlotsResponse(
        slots=orchestrator.slots,
        completed_images=orchestrator.completed_images,
        has_active_generations=orchestrator.has_active_generations,
    )


def _references_response(session: StudioSession) -> ReferencesResponse:
    tracker = session.reference_tracker
    return ReferencesResponse(
        reference_images=tracker.reference_images,
        reference_image_keys=tracker.reference_image_keys,
        failed_uploads=tracker.failed_uploads,
        is_uploading=tracker.is_uploading,
        last_error=tracker.last_error,
    )


# API Endpoints


@router.post(
    "/generations", response_model=StartGenerationResponse, status_code=status.HTTP_202_ACCEPTED
)
async def start_generation(
    request: StartGenerationRequest,
    session: SessionDep,
    counter: Annotated[ExecutionCounter, Depends(get_execution_counter)],
) -> StartGenerationResponse:
    """Start a generation batch and return without waiting for any image.

    Raises:
        HTTPException 422: Invalid image count or prompt (no slots are created)
    """
    reference_keys = request.reference_image_keys
    if reference_keys is None:
        reference_keys = session.reference_tracker.reference_image_keys

    try:
        batch_id = session.orchestrator.start_batch_generation(
            BatchGenerationRequest(
                prompt=request.prompt,
                image_count=request.image_count,
                api_key=request.api_key,
                reference_image_keys=reference_keys,
                reference_images=request.reference_images,
            )
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await counter.track_execution()

    slot_ids = [slot.id for slot in session.orchestrator.batch_slots(batch_id)]
    return StartGenerationResponse(batch_id=batch_id, slot_ids=slot_ids)


@router.get("/generations", response_model=SlotsResponse)
async def get_generations(session: SessionDep) -> SlotsResponse:
    return _slots_response(session)


@router.post("/generations/{slot_id}/cancel", response_model=GenerationSlot)
async def cancel_generation(slot_id: str, session: SessionDep) -> GenerationSlot:
    """Cancel a generating slot. Slots in any other state are returned unchanged."""
    try:
        return session.orchestrator.cancel_generation(slot_id)
    except SlotNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/generations/{slot_id}/retry", response_model=GenerationSlot)
async def retry_generation(slot_id: str, session: SessionDep) -> GenerationSlot:
    """Retry a completed or failed slot with its batch's original request.

    Raises:
        HTTPException 404: Unknown slot
        HTTPException 409: Slot is still pending or generating
    """
    try:
        return session.orchestrator.retry_generation(slot_id)
    except SlotNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.delete("/generations/completed", response_model=ClearResponse)
async def clear_completed(session: SessionDep) -> ClearResponse:
    return ClearResponse(removed=session.orchestrator.clear_completed())


@router.delete("/generations", response_model=ClearResponse)
async def clear_all(session: SessionDep) -> ClearResponse:
    return ClearResponse(removed=session.orchestrator.clear_all())


@router.post(
    "/references", response_model=ReferencesResponse, status_code=status.HTTP_202_ACCEPTED
)
async def upload_references(
    request: UploadReferencesRequest,
    session: SessionDep,
    settings: Annotated[Settings, Depends(get_settings)],
) -> ReferencesResponse:
    """Start uploading reference images in the background.

    Files failing local size/type checks are reported in ``failed_uploads``
    and skipped. An empty file list clears the session's references.
    """
    try:
        validate_reference_count(len(request.files), settings.max_reference_images)
    except InvalidInputError as e:
        raise HTTPException(status_code=422, detail=str(e))

    session.reference_tracker.start_upload(request.files)
    return _references_response(session)


@router.get("/references", response_model=ReferencesResponse)
async def get_references(session: SessionDep) -> ReferencesResponse:
    return _references_response(session)


@router.delete("/references", response_model=ReferencesResponse)
async def clear_references(session: SessionDep) -> ReferencesResponse:
    session.reference_tracker.clear()
    return _references_response(session)


@router.get("/images/view", response_model=ViewResult)
async def view_image(
    resolver: ResolverDep,
    key: str = Query(..., min_length=1, description="Storage key"),
    expires_in: int = Query(default=3600, description="URL lifetime in seconds (60-3600)"),
) -> ViewResult:
    """Resolve a storage key to a data URL (images) or text content (other objects).

    Raises:
        HTTPException 404: No object under the key
        HTTPException 413: Image larger than the preview limit
        HTTPException 422: Invalid expires_in
        HTTPException 502: Object store failure
    """
    try:
        view = await resolver.resolve(key, expires_in)
    except InvalidInputError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if view.success:
        return view
    if view.error_kind == ErrorKind.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=view.error)
    if view.error_kind == ErrorKind.TOO_LARGE:
        raise HTTPException(status_code=413, detail=view.error)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=view.error)


@router.get("/gallery", response_model=GalleryResponse)
async def get_gallery(session: SessionDep, resolver: ResolverDep) -> GalleryResponse:
    return GalleryResponse(
        items=compose_gallery(session.orchestrator.slots, resolver),
        has_active_generations=session.orchestrator.has_active_generations,
    )


@router.get("/objects", response_model=ListObjectsResult)
async def list_objects(
    blob_client: Annotated[BlobStoreClient, Depends(get_blob_client)],
    prefix: Optional[str] = Query(default=None, description="Key prefix, e.g. generations/"),
    limit: int = Query(default=50, ge=1, le=BlobStoreClient.MAX_LIST_LIMIT),
) -> ListObjectsResult:
    listed = await blob_client.list_objects(prefix=prefix, limit=limit)
    if not listed.success:
        logger.warning("objects.list_failed", prefix=prefix, error=listed.error)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=listed.error)
    return listed
