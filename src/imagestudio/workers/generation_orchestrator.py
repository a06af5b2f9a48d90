"""Generation slot orchestrator.

Creates a fixed number of slots per batch, dispatches one executor task per
slot and feeds each completion back through the slot reducer.

Workflow for start_batch_generation:
1. Validate image count and prompt (no slot exists yet if this fails)
2. Create every slot as pending, sharing one batch id
3. Move every slot to generating with the same start time
4. Spawn one asyncio task per slot and return the batch id without waiting

Each task ends by dispatching exactly one GenerationFinished message tagged
with its slot id and attempt. Cancelling a slot cancels its task, which aborts
the in-flight HTTP request.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from imagestudio.core.config import Settings
from imagestudio.models.results import GenerationResult
from imagestudio.models.slot import GenerationSlot, SlotStatus
from imagestudio.models.stored_image import StoredImage
from imagestudio.services.exceptions import ErrorKind
from imagestudio.services.files import SerializedFile
from imagestudio.services.generation.executor import GenerationExecutor, GenerationRequest
from imagestudio.services.generation.validation import validate_image_count, validate_prompt
from imagestudio.state.slots import (
    AllCleared,
    BatchCreated,
    CompletedCleared,
    GenerationCancelled,
    GenerationFinished,
    GenerationStarted,
    RetryRequested,
    SlotMessage,
    SlotState,
    batch_slots,
    completed_images,
    has_active_generations,
    ordered_slots,
    reduce_slots,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchGenerationRequest(BaseModel):
    """One user-initiated generation action."""

    prompt: str
    image_count: int = 1
    api_key: str = Field(repr=False)
    reference_image_keys: list[str] = Field(default_factory=list)
    reference_images: list[SerializedFile] = Field(default_factory=list)


class GenerationOrchestrator:
    """Owns the slot state of one client session and the tasks that update it."""

    def __init__(
        self,
        executor: GenerationExecutor,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.executor = executor
        self.settings = settings
        self._clock = clock
        self._state = SlotState()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._requests: dict[str, BatchGenerationRequest] = {}

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def slots(self) -> list[GenerationSlot]:
        return ordered_slots(self._state)

    @property
    def completed_images(self) -> list[StoredImage]:
        return completed_images(self._state)

    @property
    def has_active_generations(self) -> bool:
        return has_active_generations(self._state)

    def get_slot(self, slot_id: str) -> GenerationSlot:
        return self._state.get(slot_id)

    def batch_slots(self, batch_id: str) -> list[GenerationSlot]:
        return batch_slots(self._state, batch_id)

    def start_batch_generation(self, request: BatchGenerationRequest) -> str:
        """Create the batch's slots, start one task per slot and return the batch id.

        Must be called from a running event loop. Returns before any request resolves.

        Raises:
            InvalidInputError: If image count or prompt is invalid (no slots are created)
        """
        validate_image_count(request.image_count, self.settings.max_images)
        validate_prompt(request.prompt, self.settings.max_prompt_length)

        batch_id = uuid.uuid4().hex
        slots = tuple(
            GenerationSlot(
                id=f"{batch_id}-{index}",
                batch_id=batch_id,
                image_index=index,
                prompt=request.prompt,
            )
            for index in range(request.image_count)
        )
        self._dispatch(BatchCreated(slots=slots))

        now = self._clock()
        for slot in slots:
            self._dispatch(GenerationStarted(slot_id=slot.id, now=now))

        self._requests[batch_id] = request
        for slot in slots:
            self._launch(self._state.get(slot.id), request)

        logger.info(
            "batch.started",
            batch_id=batch_id,
            image_count=request.image_count,
            reference_count=len(request.reference_images) + len(request.reference_image_keys),
            prompt=request.prompt[:100],
        )
        return batch_id

    def cancel_generation(self, slot_id: str) -> GenerationSlot:
        """Mark a generating slot as cancelled and abort its request.

        No-op for slots that are not generating.

        Raises:
            SlotNotFoundError: If the slot does not exist
        """
        slot = self._state.get(slot_id)
        if slot.status != SlotStatus.GENERATING:
            logger.debug("slot.cancel_ignored", slot_id=slot_id, status=slot.status.value)
            return slot

        self._dispatch(GenerationCancelled(slot_id=slot_id))
        task = self._tasks.pop(slot_id, None)
        if task is not None and not task.done():
            task.cancel()

        logger.info("slot.cancelled", slot_id=slot_id, batch_id=slot.batch_id)
        return self._state.get(slot_id)

    def retry_generation(self, slot_id: str) -> GenerationSlot:
        """Restart a completed or errored slot with the batch's original request.

        Raises:
            SlotNotFoundError: If the slot does not exist
            InvalidStateTransition: If the slot is still active
        """
        slot = self._state.get(slot_id)
        self._dispatch(RetryRequested(slot_id=slot_id, now=self._clock()))
        slot = self._state.get(slot_id)

        self._launch(slot, self._requests[slot.batch_id])
        logger.info("slot.retried", slot_id=slot_id, attempt=slot.attempt)
        return slot

    def clear_completed(self) -> int:
        """Drop terminal slots. Returns the number of slots removed."""
        before = len(self._state)
        self._dispatch(CompletedCleared())
        self._prune_requests()
        return before - len(self._state)

    def clear_all(self) -> int:
        """Cancel every in-flight request and drop all slots."""
        removed = len(self._state)
        self._cancel_tasks()
        self._dispatch(AllCleared())
        self._requests.clear()
        return removed

    async def wait_idle(self) -> None:
        """Wait until no slot task is running, including tasks started by retries meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all in-flight requests and wait for their tasks to exit."""
        for slot in self.slots:
            if slot.status == SlotStatus.GENERATING:
                self._dispatch(GenerationCancelled(slot_id=slot.id))
        tasks = self._cancel_tasks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _dispatch(self, message: SlotMessage) -> None:
        self._state = reduce_slots(self._state, message)

    def _launch(self, slot: GenerationSlot, batch: BatchGenerationRequest) -> None:
        request = GenerationRequest(
            prompt=slot.prompt,
            api_key=batch.api_key,
            reference_images=batch.reference_images,
            reference_image_keys=batch.reference_image_keys,
            image_index=slot.image_index,
            batch_id=slot.batch_id,
        )
        task = asyncio.create_task(
            self._run(slot.id, slot.attempt, request), name=f"generation-{slot.id}"
        )
        self._tasks[slot.id] = task
        task.add_done_callback(lambda t, sid=slot.id: self._forget(sid, t))

    async def _run(self, slot_id: str, attempt: int, request: GenerationRequest) -> None:
        try:
            result = await self.executor.execute(request)
        except Exception as e:
            logger.exception("slot.unexpected_error", slot_id=slot_id, error=str(e))
            result = GenerationResult.failed(f"Unexpected error: {e}", ErrorKind.UNKNOWN)

        self._dispatch(GenerationFinished(slot_id=slot_id, attempt=attempt, result=result))
        logger.debug(
            "slot.finished",
            slot_id=slot_id,
            attempt=attempt,
            success=result.success,
            error_kind=result.error_kind.value if result.error_kind else None,
        )

    def _forget(self, slot_id: str, task: "asyncio.Task[None]") -> None:
        if self._tasks.get(slot_id) is task:
            del self._tasks[slot_id]

    def _cancel_tasks(self) -> list["asyncio.Task[None]"]:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        return tasks

    def _prune_requests(self) -> None:
        live_batches = {slot.batch_id for slot in self._state.slots.values()}
        for batch_id in list(self._requests):
            if batch_id not in live_batches:
                del self._requests[batch_id]
