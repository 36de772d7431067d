"""
Buffered persistence of final-mode mutations

Three independent queues (student updates, carry-over inserts, semester
result inserts) flushed in batches through a write sink. Preview mode gets a
policy that records nothing.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from app.computation.constants import FLUSH_THRESHOLD, Purpose
from app.computation.errors import BufferFlushError
from app.models.computation import CarryoverRecord, SemesterResultRecord, StudentMutation


class ComputationMode(BaseModel):
    """Value object selecting preview or final behaviour"""
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    purpose: Purpose = Purpose.FINAL

    @classmethod
    def from_request(cls, is_preview: bool = False, purpose: Optional[str] = None) -> "ComputationMode":
        if purpose is None:
            purpose = Purpose.PREVIEW if is_preview else Purpose.FINAL
        purpose = Purpose(purpose)
        if is_preview and purpose == Purpose.FINAL:
            purpose = Purpose.PREVIEW
        return cls(purpose=purpose)

    @property
    def is_final(self) -> bool:
        return self.purpose == Purpose.FINAL.value

    @property
    def is_preview(self) -> bool:
        return not self.is_final


class BulkPersistenceBuffer:
    def __init__(self, sink):
        self.sink = sink
        self.student_updates: List[StudentMutation] = []
        self.carryovers: List[CarryoverRecord] = []
        self.semester_results: List[SemesterResultRecord] = []
        self.flush_count = 0
        self.written = {"student_updates": 0, "carryovers": 0, "semester_results": 0}

    def add_student_update(self, mutation: StudentMutation):
        self.student_updates.append(mutation)

    def add_carryover(self, record: CarryoverRecord):
        self.carryovers.append(record)

    def add_semester_result(self, record: SemesterResultRecord):
        self.semester_results.append(record)

    @property
    def pending(self) -> int:
        return len(self.student_updates) + len(self.carryovers) + len(self.semester_results)

    def should_flush(self, threshold: int = FLUSH_THRESHOLD) -> bool:
        return self.pending >= threshold

    def clear(self):
        self.student_updates = []
        self.carryovers = []
        self.semester_results = []

    async def flush(self) -> Dict[str, int]:
        """Write the three queues; on any failure every queue is cleared and BufferFlushError raised"""
        if not self.pending:
            return {"student_updates": 0, "carryovers": 0, "semester_results": 0}

        students, carryovers, semester_results = self.student_updates, self.carryovers, self.semester_results
        outcome = await asyncio.gather(
            self.sink.write_student_updates(students),
            self.sink.write_carryovers(carryovers),
            self.sink.write_semester_results(semester_results),
            return_exceptions=True,
        )
        self.clear()

        errors = [e for e in outcome if isinstance(e, BaseException)]
        if errors:
            logging.error("Bulk flush failed: %s", "; ".join(str(e) for e in errors))
            raise BufferFlushError(f"Bulk write failed: {errors[0]}", details=[repr(e) for e in errors]) from errors[0]

        stats = {
            "student_updates": len(students),
            "carryovers": len(carryovers),
            "semester_results": len(semester_results),
        }
        for key, value in stats.items():
            self.written[key] += value
        self.flush_count += 1
        logging.info("Bulk flush #%d: %s", self.flush_count, stats)
        return stats


class PersistencePolicy(ABC):
    """What a department job does with each student outcome"""

    writes = False

    @abstractmethod
    def record(self, outcome) -> None:
        ...

    @abstractmethod
    async def maybe_flush(self, threshold: int) -> Optional[Dict[str, int]]:
        ...

    @abstractmethod
    async def flush(self) -> Dict[str, int]:
        ...

    @property
    def flush_count(self) -> int:
        return 0


class FinalPersistence(PersistencePolicy):
    writes = True

    def __init__(self, buffer: BulkPersistenceBuffer):
        self.buffer = buffer

    def record(self, outcome) -> None:
        if outcome.mutation is not None:
            self.buffer.add_student_update(outcome.mutation)
        for record in outcome.carryovers:
            self.buffer.add_carryover(record)
        if outcome.semester_result is not None:
            self.buffer.add_semester_result(outcome.semester_result)

    async def maybe_flush(self, threshold: int) -> Optional[Dict[str, int]]:
        if self.buffer.should_flush(threshold):
            return await self.buffer.flush()
        return None

    async def flush(self) -> Dict[str, int]:
        return await self.buffer.flush()

    @property
    def flush_count(self) -> int:
        return self.buffer.flush_count


class PreviewPersistence(PersistencePolicy):
    def record(self, outcome) -> None:
        return None

    async def maybe_flush(self, threshold: int) -> Optional[Dict[str, int]]:
        return None

    async def flush(self) -> Dict[str, int]:
        return {"student_updates": 0, "carryovers": 0, "semester_results": 0}


def persistence_for(mode: ComputationMode, sink) -> PersistencePolicy:
    if mode.is_final:
        return FinalPersistence(BulkPersistenceBuffer(sink))
    return PreviewPersistence()
