"""Gallery composition: slot state merged with resolved view URLs.

A completed slot whose view is not cached yet is reported as ``loading`` and
its resolution is started in the background, so rendering never waits on the
blob store.
"""

from datetime import datetime, timezone
from typing import Literal, Optional, Sequence

from pydantic import BaseModel

from imagestudio.models.slot import GenerationSlot, SlotStatus
from imagestudio.models.stored_image import StoredImage
from imagestudio.services.storage.view_resolver import SignedViewResolver

ViewStatus = Literal["pending", "loading", "ready", "error"]


class GalleryItem(BaseModel):
    slot_id: str
    batch_id: str
    image_index: int
    prompt: str
    status: SlotStatus
    view_status: ViewStatus
    elapsed_seconds: Optional[float] = None
    image: Optional[StoredImage] = None
    url: Optional[str] = None
    error: Optional[str] = None


def compose_gallery(
    slots: Sequence[GenerationSlot],
    resolver: SignedViewResolver,
    now: Optional[datetime] = None,
) -> list[GalleryItem]:
    """Build one gallery item per slot, in slot order. Must run inside an event loop."""
    now = now or datetime.now(timezone.utc)
    return [_compose_item(slot, resolver, now) for slot in slots]


def _compose_item(
    slot: GenerationSlot, resolver: SignedViewResolver, now: datetime
) -> GalleryItem:
    item = GalleryItem(
        slot_id=slot.id,
        batch_id=slot.batch_id,
        image_index=slot.image_index,
        prompt=slot.prompt,
        status=slot.status,
        view_status="pending",
        image=slot.image,
    )

    if slot.is_active:
        if slot.started_at is not None:
            item.elapsed_seconds = max((now - slot.started_at).total_seconds(), 0.0)
        return item

    if slot.status == SlotStatus.ERROR or slot.image is None:
        item.view_status = "error"
        item.error = slot.error
        return item

    key = slot.image.storage_key
    view = resolver.peek(key)
    if view is None:
        resolver.prefetch(key)
        item.view_status = "loading"
    elif view.success:
        item.view_status = "ready"
        item.url = view.url
    else:
        item.view_status = "error"
        item.error = view.error
    return item
