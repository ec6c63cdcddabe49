"""
Core value types shared by the execution pipeline.

* :class:`ExecutionRequest` – a validated request, immutable once accepted.
* :class:`ExecutionOutcome` – what the orchestrator observed for one run.
* :class:`ExecutionResult` – the final, immutable result handed back to the
  gateway.  ``success`` describes the orchestration, not the program: a
  program that exits non-zero still yields ``success=True``.
* :class:`Deadline` – a monotonic expiry passed through a run so every
  blocking step can bound itself by the time that is left.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

TIMEOUT_EXIT_CODE = -1


@dataclass(frozen=True)
class ExecutionRequest:
    code: str
    language: str
    input: str = ""
    timeout_ms: int = 30000


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of running one unit to completion or to a timeout kill.

    Attributes
    ----------
    stdout: str
        Standard output of the program, trimmed.
    stderr: str
        Standard error of the program, trimmed.
    exit_code: int
        Exit status of the program, or ``TIMEOUT_EXIT_CODE`` when killed.
    timed_out: bool
        Whether the deadline expired before the program finished.
    """

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


@dataclass(frozen=True)
class ExecutionResult:
    execution_id: str
    success: bool
    output: str
    error: str
    exit_code: int
    execution_time_ms: int
    language: str
    timed_out: bool = False


@dataclass
class Deadline:
    """Wall-clock budget for one execution, measured on a monotonic clock."""

    seconds: float
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_ms(cls, milliseconds: int) -> "Deadline":
        return cls(milliseconds / 1000)

    @property
    def expires_at(self) -> float:
        return self.started_at + self.seconds

    def remaining(self, floor: float = 0.0) -> float:
        return max(floor, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def elapsed_ms(self, now: Optional[float] = None) -> int:
        return int(((now or time.monotonic()) - self.started_at) * 1000)
