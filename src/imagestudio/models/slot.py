"""GenerationSlot entity - one requested image with lifecycle status tracking."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from imagestudio.models.stored_image import StoredImage
from imagestudio.services.exceptions import ErrorKind


class SlotStatus(str, Enum):
    """Slot lifecycle status."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = (SlotStatus.PENDING, SlotStatus.GENERATING)
TERMINAL_STATUSES = (SlotStatus.COMPLETED, SlotStatus.ERROR)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid slot state transition."""

    pass


class SlotNotFoundError(LookupError):
    """Raised when a slot id is not present in the current slot set."""

    pass


class GenerationSlot(BaseModel):
    """One requested output image within a batch.

    Slots are immutable; every transition returns an updated copy so that
    slot collections can be rebuilt from the previous value without sharing
    mutable state between completions.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    batch_id: str
    image_index: int = Field(ge=0)
    prompt: str
    status: SlotStatus = SlotStatus.PENDING
    started_at: Optional[datetime] = None
    attempt: int = Field(default=0, ge=0)
    image: Optional[StoredImage] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_generating(self, now: datetime) -> "GenerationSlot":
        """Transition from pending to generating.

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != SlotStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark generating from {self.status.value}. Slot must be in pending state."
            )
        return self.model_copy(
            update={"status": SlotStatus.GENERATING, "started_at": now, "attempt": self.attempt + 1}
        )

    def mark_completed(self, image: StoredImage) -> "GenerationSlot":
        """Transition from generating to completed.

        Raises:
            InvalidStateTransition: If current status is not generating
        """
        if self.status != SlotStatus.GENERATING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Slot must be in generating state."
            )
        return self.model_copy(
            update={
                "status": SlotStatus.COMPLETED,
                "image": image,
                "error": None,
                "error_kind": None,
            }
        )

    def mark_error(
        self, error: str, error_kind: Optional[ErrorKind] = None
    ) -> "GenerationSlot":
        """Transition from generating to error.

        Raises:
            InvalidStateTransition: If current status is not generating
            ValueError: If error message is empty
        """
        if self.status != SlotStatus.GENERATING:
            raise InvalidStateTransition(
                f"Cannot mark error from {self.status.value}. Slot must be in generating state."
            )
        if not error:
            raise ValueError("error message is required")
        return self.model_copy(
            update={
                "status": SlotStatus.ERROR,
                "error": error,
                "error_kind": error_kind,
                "image": None,
            }
        )

    def restart(self, now: datetime) -> "GenerationSlot":
        """Transition from a terminal state back to generating (user retry).

        The new start time is strictly later than the previous one, even when
        the clock has not advanced.

        Raises:
            InvalidStateTransition: If current status is not terminal
        """
        if not self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot retry from {self.status.value}. Slot must be completed or error."
            )
        if self.started_at is not None and now <= self.started_at:
            now = self.started_at + timedelta(microseconds=1)
        return self.model_copy(
            update={
                "status": SlotStatus.GENERATING,
                "started_at": now,
                "attempt": self.attempt + 1,
                "image": None,
                "error": None,
                "error_kind": None,
            }
        )
