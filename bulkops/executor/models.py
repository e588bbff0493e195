"""
bulkops/executor/models.py

Purpose:
    Result types for the bulk executor.

Semantics:
    - OperationResult: terminal outcome for one target.
    - BatchProgress: results of one finished batch, for progress reporting.
    - BatchRun: every target's outcome, in input order. The three outcome
      buckets partition the input target list exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # Mutation not applicable to this target


@dataclass(frozen=True)
class OperationResult:
    target_id: str
    outcome: Outcome
    message: Optional[str] = None
    attempts: int = 0


@dataclass(frozen=True)
class BatchProgress:
    index: int          # 0-based batch number
    total: int          # number of batches in the run
    results: Tuple[OperationResult, ...] = ()

    @property
    def is_last(self) -> bool:
        return self.index == self.total - 1


@dataclass
class BatchRun:
    results: List[OperationResult] = field(default_factory=list)

    def _ids(self, outcome: Outcome) -> List[str]:
        return [r.target_id for r in self.results if r.outcome == outcome]

    @property
    def successful(self) -> List[str]:
        return self._ids(Outcome.SUCCESS)

    @property
    def failed(self) -> List[str]:
        return self._ids(Outcome.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._ids(Outcome.SKIPPED)

    @property
    def failures(self) -> List[OperationResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]

    def extend(self, results) -> None:
        self.results.extend(results)

    def summary(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": [
                {"target_id": r.target_id, "message": r.message} for r in self.failures
            ],
        }

    def describe(self) -> str:
        return (
            f"Success: {len(self.successful)}, "
            f"Failed: {len(self.failed)}, "
            f"Skipped: {len(self.skipped)}"
        )
