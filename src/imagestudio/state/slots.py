"""Slot collection state and its pure reducer.

The slot collection is an explicit value: every change is a message applied
to the previous state, producing a new state. Completions only ever touch the
slot they name, so they can be applied in any arrival order.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Union

from imagestudio.models.results import GenerationResult
from imagestudio.models.slot import GenerationSlot, SlotNotFoundError, SlotStatus
from imagestudio.models.stored_image import StoredImage
from imagestudio.services.exceptions import CANCELLED_MESSAGE, ErrorKind


@dataclass(frozen=True)
class BatchCreated:
    slots: tuple[GenerationSlot, ...]


@dataclass(frozen=True)
class GenerationStarted:
    slot_id: str
    now: datetime


@dataclass(frozen=True)
class GenerationFinished:
    """Completion of one executor call, tagged with the attempt it belongs to."""

    slot_id: str
    attempt: int
    result: GenerationResult


@dataclass(frozen=True)
class GenerationCancelled:
    slot_id: str


@dataclass(frozen=True)
class RetryRequested:
    slot_id: str
    now: datetime


@dataclass(frozen=True)
class CompletedCleared:
    """Drop every terminal slot, keeping the active ones."""


@dataclass(frozen=True)
class AllCleared:
    pass


SlotMessage = Union[
    BatchCreated,
    GenerationStarted,
    GenerationFinished,
    GenerationCancelled,
    RetryRequested,
    CompletedCleared,
    AllCleared,
]


@dataclass(frozen=True)
class SlotState:
    """Immutable ordered mapping of slot id to slot, in creation order."""

    slots: Mapping[str, GenerationSlot] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, slot_id: str) -> GenerationSlot:
        try:
            return self.slots[slot_id]
        except KeyError:
            raise SlotNotFoundError(f"Slot {slot_id} not found") from None

    def __contains__(self, slot_id: object) -> bool:
        return slot_id in self.slots

    def __len__(self) -> int:
        return len(self.slots)

    def _replace(self, slot: GenerationSlot) -> "SlotState":
        updated = dict(self.slots)
        updated[slot.id] = slot
        return SlotState(slots=MappingProxyType(updated))


def reduce_slots(state: SlotState, message: SlotMessage) -> SlotState:
    """Apply one message to the slot state and return the new state.

    Raises:
        SlotNotFoundError: Start, cancel or retry naming an unknown slot
        InvalidStateTransition: Start of a non-pending slot, retry of an active slot
        ValueError: Batch containing an id already present
    """
    if isinstance(message, BatchCreated):
        updated = dict(state.slots)
        for slot in message.slots:
            if slot.id in updated:
                raise ValueError(f"Duplicate slot id {slot.id}")
            updated[slot.id] = slot
        return SlotState(slots=MappingProxyType(updated))

    if isinstance(message, GenerationStarted):
        return state._replace(state.get(message.slot_id).mark_generating(message.now))

    if isinstance(message, GenerationFinished):
        slot = state.slots.get(message.slot_id)
        # Slot cleared, cancelled or restarted since this request was issued
        if (
            slot is None
            or slot.status != SlotStatus.GENERATING
            or slot.attempt != message.attempt
        ):
            return state
        result = message.result
        if result.success and result.image is not None:
            return state._replace(slot.mark_completed(result.image))
        return state._replace(
            slot.mark_error(result.error or "Image generation failed", result.error_kind)
        )

    if isinstance(message, GenerationCancelled):
        slot = state.get(message.slot_id)
        if slot.status != SlotStatus.GENERATING:
            return state
        return state._replace(slot.mark_error(CANCELLED_MESSAGE, ErrorKind.CANCELLED))

    if isinstance(message, RetryRequested):
        return state._replace(state.get(message.slot_id).restart(message.now))

    if isinstance(message, CompletedCleared):
        return SlotState(
            slots=MappingProxyType(
                {slot_id: slot for slot_id, slot in state.slots.items() if slot.is_active}
            )
        )

    if isinstance(message, AllCleared):
        return SlotState()

    raise TypeError(f"Unsupported slot message: {type(message).__name__}")


def has_active_generations(state: SlotState) -> bool:
    return any(slot.is_active for slot in state.slots.values())


def completed_images(state: SlotState) -> list[StoredImage]:
    """Images of completed slots, in slot order."""
    return [
        slot.image
        for slot in ordered_slots(state)
        if slot.status == SlotStatus.COMPLETED and slot.image is not None
    ]


def ordered_slots(state: SlotState) -> list[GenerationSlot]:
    """Slots in creation order (batch order, then image index)."""
    return list(state.slots.values())


def batch_slots(state: SlotState, batch_id: str) -> list[GenerationSlot]:
    return sorted(
        (slot for slot in state.slots.values() if slot.batch_id == batch_id),
        key=lambda slot: slot.image_index,
    )
