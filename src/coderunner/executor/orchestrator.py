"""
Execution orchestrator.

Runs one populated workspace inside a fresh, isolated container and reports
what happened.  The container runtime is injected so that tests can swap in
a fake; every blocking runtime call runs on a worker thread and is bounded
either by the request's :class:`~coderunner.executor.base.Deadline` or by the
configured grace period.

Isolation settings (memory ceiling without swap, CPU quota, pids limit, no
network, auto-removal) come from process configuration only and cannot be
changed per request.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, TypeVar

from ..config import Config
from ..errors import InfrastructureError
from ..languages import LanguageProfile
from ..workspace import INPUT_FILENAME, Workspace
from .base import TIMEOUT_EXIT_CODE, Deadline, ExecutionOutcome
from .cleanup import CleanupSupervisor, ExecutionState, ReleaseAction
from .output import EXIT_MARKER, OutputCollector
from .runtime import EXECUTION_LABEL, ContainerRuntime, OutputStream, UnitSpec

logger = logging.getLogger("coderunner.orchestrator")

_POLL_INTERVAL = 0.05

T = TypeVar("T")


def build_command(profile: LanguageProfile, filename: str, has_input: bool = False) -> str:
    """Build the shell command run inside the container.

    Compiled languages run ``compile && run``.  Stdin is redirected from the
    input file for the whole group when one exists.  The exit status of the
    group is printed as a final marker line and re-used as the container's
    own exit status.
    """
    stem = PurePosixPath(filename).stem
    values = {"filename": shlex.quote(filename), "stem": shlex.quote(stem)}
    body = profile.run_template.format(**values)
    if profile.compile_template:
        body = f"{profile.compile_template.format(**values)} && {body}"
    if has_input:
        body = f"{{ {body}; }} < {INPUT_FILENAME}"
    return f'{body}; rc=$?; printf "\\n{EXIT_MARKER}:%d\\n" "$rc"; exit "$rc"'


def _consume(future: asyncio.Future) -> None:
    # Threads abandoned after a timeout still finish; collect their outcome
    # so asyncio does not warn about unretrieved exceptions.
    if not future.cancelled():
        future.exception()


class _DeadlineExceeded(Exception):
    """A provisioning step was still running when the deadline expired."""


class ExecutionOrchestrator:
    def __init__(self, runtime: ContainerRuntime, config: Config) -> None:
        self.runtime = runtime
        self.config = config

    @property
    def grace(self) -> float:
        return self.config.kill_grace_seconds

    def unit_spec(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        host_dir: Path,
    ) -> UnitSpec:
        if workspace.source_file is None:
            raise InfrastructureError(f"Workspace {workspace.execution_id} has no source file")
        command = build_command(profile, workspace.source_file.name, workspace.has_input)
        return UnitSpec(
            image=profile.image,
            command=["/bin/sh", "-c", command],
            workspace_dir=host_dir,
            memory_bytes=self.config.memory_limit_mb * 1024 * 1024,
            cpu_quota=self.config.cpu_quota,
            cpu_period=self.config.cpu_period,
            pids_limit=self.config.pids_limit,
            network_disabled=True,
            labels={EXECUTION_LABEL: workspace.execution_id},
            name=f"coderunner-{workspace.execution_id}",
        )

    async def run(
        self,
        profile: LanguageProfile,
        workspace: Workspace,
        host_dir: Path,
        timeout_ms: int,
        supervisor: CleanupSupervisor,
    ) -> ExecutionOutcome:
        """Provision, run and supervise one unit within ``timeout_ms``.

        The deadline covers provisioning as well as the program itself.
        Whatever happens after it expires (kill, removal, output drain) shares
        one grace period, so the caller hears back within timeout + grace.
        """
        deadline = Deadline.from_ms(timeout_ms)
        spec = self.unit_spec(profile, workspace, host_dir)

        supervisor.transition(ExecutionState.PROVISIONING)
        # Registered by name before create: a create that fails or times out
        # after the daemon accepted it still gets its container removed.
        unit_release = supervisor.register(
            f"container {spec.name}", lambda: self.reclaim_unit(spec.name)
        )
        try:
            unit_id = await self._provision(
                deadline, self.runtime.create, spec, late=self._reclaim_late
            )
            # Attach before start so no early output is lost.
            stream = await self._provision(
                deadline, self.runtime.attach, unit_id, late=self._close_late
            )
            supervisor.register(f"output stream {spec.name}", stream.close)
            await self._provision(deadline, self.runtime.start, unit_id)
        except _DeadlineExceeded:
            self._check_released(supervisor, workspace)
            supervisor.transition(ExecutionState.TIMED_OUT)
            logger.warning(
                "Execution %s exceeded %sms while provisioning", workspace.execution_id, timeout_ms
            )
            await self._within_grace(Deadline(self.grace), spec.name, unit_release)
            return ExecutionOutcome(stdout="", stderr="", exit_code=TIMEOUT_EXIT_CODE, timed_out=True)
        except Exception:
            if not supervisor.released:
                supervisor.transition(ExecutionState.PROVISION_FAILED)
            raise
        supervisor.transition(ExecutionState.RUNNING)

        logger.info(
            "Started %s unit %s for execution %s (timeout=%sms)",
            profile.id,
            unit_id[:12],
            workspace.execution_id,
            timeout_ms,
        )

        collector = OutputCollector(self.config.max_output_bytes)
        pump = asyncio.ensure_future(asyncio.to_thread(self._pump, stream, collector))
        pump.add_done_callback(_consume)
        waiter = asyncio.ensure_future(
            asyncio.to_thread(self.runtime.wait, unit_id, deadline.remaining() + self.grace)
        )
        waiter.add_done_callback(_consume)

        done, _ = await asyncio.wait({waiter}, timeout=deadline.remaining())
        status = self._status(waiter) if waiter in done else None
        self._check_released(supervisor, workspace)

        if status is None:
            supervisor.transition(ExecutionState.TIMED_OUT)
            logger.warning(
                "Execution %s exceeded %sms; killing unit %s",
                workspace.execution_id,
                timeout_ms,
                unit_id[:12],
            )
            grace = Deadline(self.grace)
            await self._within_grace(grace, unit_id, self._terminate, unit_id, unit_release)
            await self._drain(pump, grace)
            collected = collector.result()
            return ExecutionOutcome(
                stdout=collected.stdout,
                stderr=collected.stderr,
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        await self._drain(pump, Deadline(self.grace))
        supervisor.transition(ExecutionState.COMPLETED)
        collected = collector.result()
        if collector.truncated:
            logger.info("Output of execution %s was truncated", workspace.execution_id)
        exit_code = collected.exit_code if collected.exit_code is not None else status
        return ExecutionOutcome(
            stdout=collected.stdout,
            stderr=collected.stderr,
            exit_code=exit_code,
        )

    async def _provision(self, deadline: Deadline, step: Callable[..., T], *args, late=None) -> T:
        """Run one blocking provisioning step, bounded by the deadline."""
        future = asyncio.ensure_future(asyncio.to_thread(step, *args))
        done, _ = await asyncio.wait({future}, timeout=deadline.remaining())
        if future not in done:
            future.add_done_callback(late or _consume)
            raise _DeadlineExceeded()
        return future.result()

    @staticmethod
    def _close_late(future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        future.result().close()

    def _reclaim_late(self, future: asyncio.Future) -> None:
        # A create that outlived its deadline may still hand back a unit.
        if future.cancelled() or future.exception() is not None:
            return
        unit_id = future.result()
        logger.warning("Unit %s was created after its deadline; reclaiming", unit_id[:12])
        reclaim = future.get_loop().run_in_executor(None, self.reclaim_unit, unit_id)
        reclaim.add_done_callback(_consume)

    async def _within_grace(self, grace: Deadline, unit_ref: str, action: Callable, *args) -> None:
        """Run a teardown action on a worker thread for at most the grace period.

        An action that overruns keeps running in the background and the
        caller moves on. Release actions run once, so the supervisor's later
        release of the same unit is a no-op.
        """
        future = asyncio.ensure_future(asyncio.to_thread(action, *args))
        future.add_done_callback(_consume)
        done, _ = await asyncio.wait({future}, timeout=grace.remaining())
        if future not in done:
            logger.error(
                "Unit %s not reclaimed within %.3fs; continuing without waiting",
                unit_ref[:24],
                self.grace,
            )

    @staticmethod
    def _check_released(supervisor: CleanupSupervisor, workspace: Workspace) -> None:
        if supervisor.releasing:
            # Reclaimed underneath us by a server shutdown.
            raise InfrastructureError(f"Execution {workspace.execution_id} aborted during shutdown")

    def _status(self, waiter: asyncio.Future) -> Optional[int]:
        """Exit status of a finished wait, ``None`` if it gave up on time."""
        exc = waiter.exception()
        if exc is None:
            return waiter.result()
        if isinstance(exc, TimeoutError):
            return None
        if isinstance(exc, InfrastructureError):
            raise exc
        raise InfrastructureError(f"Waiting for execution unit failed: {exc}") from exc

    async def _drain(self, pump: asyncio.Future, budget: Deadline) -> None:
        """Give the output pump a bounded chance to reach end of stream."""
        await asyncio.wait({pump}, timeout=budget.remaining())
        if not pump.done():
            logger.debug("Output stream did not close within %.3fs", self.grace)

    @staticmethod
    def _pump(stream: OutputStream, collector: OutputCollector) -> None:
        for stream_id, data in stream:
            collector.feed(stream_id, data)

    def _terminate(self, unit_id: str, unit_release: ReleaseAction) -> None:
        try:
            self.runtime.kill(unit_id)
        except Exception as exc:
            logger.warning("Kill of unit %s failed: %s", unit_id[:12], exc)
        # Runs the registered release now; the supervisor's later call is a no-op.
        unit_release()

    def reclaim_unit(self, unit_ref: str) -> None:
        """Force-remove a unit and wait, bounded, for it to disappear.

        ``unit_ref`` is a container id or name.  Removal is retried once if
        the unit is still present after the grace period; after that the
        failure is logged and the caller moves on.
        """
        self._remove(unit_ref)
        give_up_at = time.monotonic() + self.grace
        while self._exists(unit_ref):
            if time.monotonic() >= give_up_at:
                break
            time.sleep(_POLL_INTERVAL)
        else:
            return

        logger.warning("Unit %s still present after %.3fs; retrying removal", unit_ref[:24], self.grace)
        self._remove(unit_ref)
        if self._exists(unit_ref):
            logger.error("Giving up on removing unit %s", unit_ref[:24])

    def _remove(self, unit_ref: str) -> None:
        try:
            self.runtime.remove(unit_ref)
        except (TimeoutError, InfrastructureError) as exc:
            logger.warning("Removal of unit %s failed: %s", unit_ref[:24], exc)

    def _exists(self, unit_ref: str) -> bool:
        try:
            return self.runtime.exists(unit_ref)
        except (TimeoutError, InfrastructureError) as exc:
            # Unknown counts as present until the grace period runs out.
            logger.debug("Inspect of unit %s failed: %s", unit_ref[:24], exc)
            return True
