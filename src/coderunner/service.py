"""Per-request execution pipeline.

validate → resolve language → create workspace → write source and input →
orchestrate → assemble result, with a :class:`CleanupSupervisor` wrapped
around everything after validation so the workspace and container are
reclaimed on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Dict, Optional, Tuple

from .config import Config
from .errors import ClientError, InfrastructureError
from .executor.base import ExecutionRequest, ExecutionResult
from .executor.cleanup import CleanupSupervisor
from .executor.orchestrator import ExecutionOrchestrator
from .executor.runtime import ContainerRuntime, DockerRuntime
from .languages import LanguageProfile, LanguageRegistry
from .workspace import Workspace, WorkspaceManager

logger = logging.getLogger("coderunner.service")

HEALTH_TIMEOUT_SECONDS = 2.0


def new_execution_id() -> str:
    return uuid.uuid4().hex


class ExecutionService:
    def __init__(
        self,
        config: Config,
        registry: LanguageRegistry,
        workspaces: WorkspaceManager,
        orchestrator: ExecutionOrchestrator,
    ) -> None:
        self.config = config
        self.registry = registry
        self.workspaces = workspaces
        self.orchestrator = orchestrator
        self._inflight: Dict[str, CleanupSupervisor] = {}

    @classmethod
    def from_config(
        cls, config: Config, runtime: Optional[ContainerRuntime] = None
    ) -> "ExecutionService":
        runtime = runtime or DockerRuntime(
            timeout=config.docker_timeout, control_timeout=config.kill_grace_seconds
        )
        return cls(
            config=config,
            registry=LanguageRegistry.from_config(config),
            workspaces=WorkspaceManager(config.workspace_root, config.host_workspace_root),
            orchestrator=ExecutionOrchestrator(runtime, config),
        )

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def validate(
        self,
        code: Optional[str],
        language: Optional[str],
        input: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> ExecutionRequest:
        """Turn raw request fields into an accepted request.

        Raises :class:`ClientError` (or its subclass for unknown languages)
        without allocating anything.
        """
        if not code or not language:
            raise ClientError("Code and language are required")
        try:
            size = len(code.encode("utf-8"))
        except UnicodeEncodeError:
            raise ClientError("Code must be valid UTF-8") from None
        if input:
            try:
                input.encode("utf-8")
            except UnicodeEncodeError:
                raise ClientError("Input must be valid UTF-8") from None
        if size > self.config.max_code_bytes:
            raise ClientError(f"Code exceeds the maximum size of {self.config.max_code_bytes} bytes")
        profile = self.registry.resolve(language)
        if timeout_ms is None:
            timeout_ms = profile.default_timeout_ms
        timeout_ms = max(1, min(int(timeout_ms), self.config.max_timeout_ms))
        return ExecutionRequest(
            code=code,
            language=profile.id,
            input=input or "",
            timeout_ms=timeout_ms,
        )

    async def execute(
        self, request: ExecutionRequest, execution_id: Optional[str] = None
    ) -> ExecutionResult:
        profile = self.registry.resolve(request.language)
        execution_id = execution_id or new_execution_id()
        started = time.perf_counter()

        supervisor = CleanupSupervisor(execution_id)
        self._inflight[execution_id] = supervisor
        try:
            async with supervisor:
                # Registered before the directory exists so a cancelled
                # create still gets cleaned up.
                workspace = self.workspaces.locate(execution_id)
                supervisor.register(
                    f"workspace {execution_id}", lambda: self.workspaces.destroy(workspace)
                )
                workspace = await asyncio.to_thread(self.workspaces.create, execution_id)
                await asyncio.to_thread(self._populate, workspace, profile, request)
                outcome = await self.orchestrator.run(
                    profile,
                    workspace,
                    self.workspaces.host_path(workspace),
                    request.timeout_ms,
                    supervisor,
                )
        finally:
            self._inflight.pop(execution_id, None)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        error = outcome.stderr
        if outcome.timed_out:
            notice = f"Execution timed out after {request.timeout_ms}ms"
            error = f"{notice}\n{error}" if error else notice

        logger.info(
            "Execution %s finished: language=%s exit_code=%s timed_out=%s duration_ms=%s",
            execution_id,
            profile.id,
            outcome.exit_code,
            outcome.timed_out,
            elapsed_ms,
        )
        return ExecutionResult(
            execution_id=execution_id,
            success=not outcome.timed_out,
            output=outcome.stdout,
            error=error,
            exit_code=outcome.exit_code,
            execution_time_ms=elapsed_ms,
            language=profile.id,
            timed_out=outcome.timed_out,
        )

    def _populate(self, workspace: Workspace, profile: LanguageProfile, request: ExecutionRequest) -> None:
        self.workspaces.write_source(workspace, profile, request.code)
        self.workspaces.write_input(workspace, request.input)

    async def health(self) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.orchestrator.runtime.ping), timeout=HEALTH_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning("Runtime ping timed out after %ss", HEALTH_TIMEOUT_SECONDS)
            return False

    async def reclaim_orphans(self) -> Tuple[int, int]:
        """Remove workspaces and containers left behind by a crashed process.

        Only safe before this process accepts requests.
        """
        swept = await asyncio.to_thread(self.workspaces.sweep)
        removed = 0
        try:
            unit_ids = await asyncio.to_thread(self.orchestrator.runtime.list_managed)
        except InfrastructureError as exc:
            logger.warning("Skipping orphaned container sweep: %s", exc)
            return swept, removed
        for unit_id in unit_ids:
            try:
                await asyncio.to_thread(self.orchestrator.reclaim_unit, unit_id)
            except Exception as exc:
                logger.error("Failed to reclaim orphaned unit %s: %s", unit_id[:12], exc)
                continue
            removed += 1
        if removed:
            logger.info("Reclaimed %d orphaned container(s)", removed)
        return swept, removed

    async def shutdown(self) -> None:
        supervisors = list(self._inflight.values())
        if not supervisors:
            return
        logger.info("Reclaiming %d in-flight execution(s) on shutdown", len(supervisors))
        await asyncio.gather(*(supervisor.release() for supervisor in supervisors))
