"""
Release-once bookkeeping for everything one execution acquires.

A :class:`CleanupSupervisor` is opened per execution.  Each resource is
registered the moment it is acquired (workspace, then container, then its
output stream) and released in reverse order when the supervisor is left,
whatever the exit path: normal return, validation failure, exception,
timeout or task cancellation.

Release actions are blocking callables run on worker threads.  Each runs at
most once; failures are logged and never propagate, because a leaked
resource must not turn a finished execution into a failed response.

The supervisor also carries the execution's state machine::

    CREATED -> PROVISIONING -> RUNNING -> {COMPLETED | TIMED_OUT}
                            \\-> {PROVISION_FAILED | TIMED_OUT}
    any state -> RECLAIMED (terminal, reached only through release)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger("coderunner.cleanup")


class ExecutionState(str, enum.Enum):
    CREATED = "created"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    PROVISION_FAILED = "provision_failed"
    RECLAIMED = "reclaimed"


_TRANSITIONS: Dict[ExecutionState, FrozenSet[ExecutionState]] = {
    ExecutionState.CREATED: frozenset({ExecutionState.PROVISIONING}),
    ExecutionState.PROVISIONING: frozenset(
        {ExecutionState.RUNNING, ExecutionState.PROVISION_FAILED, ExecutionState.TIMED_OUT}
    ),
    ExecutionState.RUNNING: frozenset(
        {ExecutionState.COMPLETED, ExecutionState.TIMED_OUT}
    ),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.TIMED_OUT: frozenset(),
    ExecutionState.PROVISION_FAILED: frozenset(),
    ExecutionState.RECLAIMED: frozenset(),
}


class ReleaseAction:
    """A named callable that runs at most once."""

    def __init__(self, name: str, action: Callable[[], object]) -> None:
        self.name = name
        self._action = action
        self.done = False

    def __call__(self) -> bool:
        if self.done:
            return False
        self.done = True
        self._action()
        return True


class CleanupSupervisor:
    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        self.state = ExecutionState.CREATED
        self.history: List[ExecutionState] = [ExecutionState.CREATED]
        self._actions: List[ReleaseAction] = []
        self._release_task: Optional[asyncio.Task] = None
        self.failures: List[Tuple[str, BaseException]] = []

    async def __aenter__(self) -> "CleanupSupervisor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    @property
    def released(self) -> bool:
        return self.state is ExecutionState.RECLAIMED

    @property
    def releasing(self) -> bool:
        """True once release has started, even if actions are still running."""
        return self._release_task is not None

    def transition(self, new_state: ExecutionState) -> None:
        if new_state is ExecutionState.RECLAIMED:
            raise RuntimeError("RECLAIMED is reached through release() only")
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid state transition for {self.execution_id}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def register(self, name: str, action: Callable[[], object]) -> ReleaseAction:
        release_action = ReleaseAction(name, action)
        if self._release_task is not None:
            # Released underneath us (server shutdown): free the late resource
            # right away, then abort the execution.
            logger.warning(
                "Execution %s already released; reclaiming late %s immediately",
                self.execution_id,
                name,
            )
            try:
                release_action()
            except Exception as exc:
                self.failures.append((name, exc))
                logger.error("Cleanup of %s failed for execution %s: %s", name, self.execution_id, exc)
            raise RuntimeError(f"Execution {self.execution_id} was released before {name} was registered")
        self._actions.append(release_action)
        return release_action

    async def release(self) -> None:
        """Run every pending release action, newest first.

        Shielded from cancellation so that a disconnecting client or a
        shutting-down server cannot interrupt cleanup halfway.  Concurrent
        and repeated calls share the first call's work.
        """
        if self._release_task is None:
            self._release_task = asyncio.ensure_future(self._release_all())
        await asyncio.shield(self._release_task)

    async def _release_all(self) -> None:
        while self._actions:
            action = self._actions.pop()
            try:
                await asyncio.to_thread(action)
            except Exception as exc:
                self.failures.append((action.name, exc))
                logger.error(
                    "Cleanup of %s failed for execution %s: %s",
                    action.name,
                    self.execution_id,
                    exc,
                )
        self.state = ExecutionState.RECLAIMED
        self.history.append(ExecutionState.RECLAIMED)
        logger.debug("Execution %s reclaimed", self.execution_id)
