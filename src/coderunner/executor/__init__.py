"""
Sandboxed execution engine.

* ``base`` – request/outcome/result value types and the ``Deadline``.
* ``runtime`` – the container runtime seam and its Docker implementation.
* ``output`` – demultiplexing of the container's combined output stream.
* ``cleanup`` – release-once bookkeeping and the execution state machine.
* ``orchestrator`` – provisions, runs and supervises one container.
"""

from .base import Deadline, ExecutionOutcome, ExecutionRequest, ExecutionResult
from .cleanup import CleanupSupervisor, ExecutionState
from .orchestrator import ExecutionOrchestrator, build_command
from .output import CollectedOutput, OutputCollector
from .runtime import ContainerRuntime, DockerRuntime, UnitSpec

__all__ = [
    "CleanupSupervisor",
    "CollectedOutput",
    "ContainerRuntime",
    "Deadline",
    "DockerRuntime",
    "ExecutionOrchestrator",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "OutputCollector",
    "UnitSpec",
    "build_command",
]
