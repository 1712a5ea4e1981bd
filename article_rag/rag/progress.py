"""Ingestion progress as explicit stage transitions.

A run reports each stage to a ProgressTracker, which checks the transition,
keeps progress monotonic and fans the resulting StageEvent out to observers.
Observers are fire-and-forget: a failing observer is logged and the run
carries on.

Progress checkpoints:
    started  -> 10
    chunked  -> 20
    embedding -> 20..90, linear in fragments embedded
    completed -> 100
    failed   -> 0
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Protocol

import structlog

from article_rag.documents import StatusStore, VectorStatus
from article_rag.errors import InvalidStageTransition

logger = structlog.get_logger()

EMBED_PROGRESS_START = 20
EMBED_PROGRESS_END = 90


class Stage(str, Enum):
    STARTED = "started"
    CHUNKED = "chunked"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_PROGRESS = {
    Stage.STARTED: 10,
    Stage.CHUNKED: EMBED_PROGRESS_START,
    Stage.COMPLETED: 100,
    Stage.FAILED: 0,
}

STAGE_STATUS = {
    Stage.STARTED: VectorStatus.PROCESSING,
    Stage.CHUNKED: VectorStatus.PROCESSING,
    Stage.EMBEDDING: VectorStatus.PROCESSING,
    Stage.COMPLETED: VectorStatus.COMPLETED,
    Stage.FAILED: VectorStatus.FAILED,
}

# Statuses a run may start from
RESTARTABLE = {VectorStatus.PENDING, VectorStatus.FAILED, VectorStatus.COMPLETED}


def embedding_progress(done: int, total: int) -> int:
    """Progress after `done` of `total` fragments have been embedded."""
    if total <= 0:
        return EMBED_PROGRESS_END
    span = EMBED_PROGRESS_END - EMBED_PROGRESS_START
    return EMBED_PROGRESS_START + int(math.floor(span * done / total + 0.5))


@dataclass(frozen=True)
class StageEvent:
    document_id: int
    stage: Stage
    status: VectorStatus
    progress: int


class ProgressObserver(Protocol):
    async def on_stage(self, event: StageEvent) -> None:
        ...


class StatusStoreObserver:
    """Persists every stage event into the document's vector_* fields."""

    def __init__(self, store: StatusStore):
        self.store = store

    async def on_stage(self, event: StageEvent) -> None:
        self.store.update_vector_state(
            event.document_id, status=event.status, progress=event.progress
        )


class ProgressTracker:
    """State machine for one ingestion run of one document."""

    def __init__(
        self,
        document_id: int,
        observers: Iterable[ProgressObserver] = (),
        initial_status: VectorStatus = VectorStatus.PENDING,
    ):
        self.document_id = document_id
        self.observers: List[ProgressObserver] = list(observers)
        self.status = initial_status
        self.progress = 0
        self.events: List[StageEvent] = []

    async def advance(self, stage: Stage, progress: Optional[int] = None) -> StageEvent:
        """Move the run to `stage` and notify observers.

        Raises:
            InvalidStageTransition: For a status change the state machine forbids
                or a progress value lower than the current one
        """
        if stage is Stage.FAILED:
            return await self.fail()

        if progress is None:
            progress = STAGE_PROGRESS[stage]

        if stage is Stage.STARTED:
            if self.status not in RESTARTABLE:
                raise InvalidStageTransition(
                    f"Cannot start ingestion of document {self.document_id} "
                    f"from status {self.status.value}"
                )
            self.progress = 0
        elif self.status is not VectorStatus.PROCESSING:
            raise InvalidStageTransition(
                f"Stage {stage.value} requires a processing run, "
                f"document {self.document_id} is {self.status.value}"
            )

        if progress < self.progress:
            raise InvalidStageTransition(
                f"Progress of document {self.document_id} cannot go from "
                f"{self.progress} back to {progress}"
            )

        return await self._emit(stage, STAGE_STATUS[stage], progress)

    async def fail(self) -> StageEvent:
        """Mark the run failed; progress resets to 0."""
        if self.status is not VectorStatus.PROCESSING:
            raise InvalidStageTransition(
                f"Only a processing run can fail, document {self.document_id} "
                f"is {self.status.value}"
            )
        return await self._emit(Stage.FAILED, VectorStatus.FAILED, 0)

    async def _emit(self, stage: Stage, status: VectorStatus, progress: int) -> StageEvent:
        self.status = status
        self.progress = progress
        event = StageEvent(
            document_id=self.document_id,
            stage=stage,
            status=status,
            progress=progress,
        )
        self.events.append(event)

        logger.info(
            "ingestion_stage",
            document_id=self.document_id,
            stage=stage.value,
            status=status.value,
            progress=progress,
        )

        for observer in self.observers:
            try:
                await observer.on_stage(event)
            except Exception as e:
                logger.error(
                    "progress_observer_failed",
                    document_id=self.document_id,
                    stage=stage.value,
                    observer=type(observer).__name__,
                    error=str(e),
                )

        return event
