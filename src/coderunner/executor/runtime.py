"""
Container runtime seam.

The orchestrator talks to containers only through :class:`ContainerRuntime`.
:class:`DockerRuntime` implements it with the Docker SDK; tests substitute a
fake.  Every method is blocking and is expected to be called from a worker
thread (``asyncio.to_thread``).

Error mapping:

* daemon unreachable → :class:`RuntimeUnavailableError`
* image missing or create/attach/start rejected → :class:`ProvisioningError`
* kill/remove of a unit that is already gone → ``False``, not an error
* a Docker call that exceeds its HTTP timeout → ``TimeoutError`` for the
  teardown calls, :class:`ProvisioningError` while provisioning

Teardown calls (kill, remove, inspect) go through a second client whose
HTTP timeout is the kill grace period, so reclaiming a unit can never hold
a request longer than that.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils.socket import frames_iter
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from ..errors import ProvisioningError, RuntimeUnavailableError

logger = logging.getLogger("coderunner.runtime")

MANAGED_LABEL = "coderunner.managed"
EXECUTION_LABEL = "coderunner.execution_id"
WORKSPACE_MOUNT = "/workspace"
UNKNOWN_STATUS = -1


@dataclass(frozen=True)
class UnitSpec:
    """Everything needed to provision one execution unit."""

    image: str
    command: List[str]
    workspace_dir: Path
    memory_bytes: int
    cpu_quota: int
    cpu_period: int = 100000
    pids_limit: int = 64
    network_disabled: bool = True
    labels: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None


class OutputStream(Protocol):
    def __iter__(self) -> Iterator[Tuple[int, bytes]]:
        ...

    def close(self) -> None:
        ...


class ContainerRuntime(Protocol):
    def ping(self) -> bool:
        ...

    def create(self, spec: UnitSpec) -> str:
        ...

    def attach(self, unit_id: str) -> OutputStream:
        ...

    def start(self, unit_id: str) -> None:
        ...

    def wait(self, unit_id: str, timeout: float) -> int:
        ...

    def kill(self, unit_id: str) -> bool:
        ...

    def remove(self, unit_id: str) -> bool:
        ...

    def exists(self, unit_id: str) -> bool:
        ...

    def list_managed(self) -> List[str]:
        ...


class DockerOutputStream:
    """Attach socket exposed as an iterator of ``(stream id, payload)`` frames."""

    def __init__(self, sock) -> None:
        self._sock = sock
        self._closed = False

    def __iter__(self) -> Iterator[Tuple[int, bytes]]:
        try:
            for stream, data in frames_iter(self._sock, tty=False):
                if self._closed:
                    return
                yield stream, data
        except (OSError, ValueError):
            # Socket closed underneath us by close() or by the daemon.
            return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        raw = getattr(self._sock, "_sock", None)
        self._sock.close()
        if raw is not None:
            raw.close()
        response = getattr(self._sock, "_response", None)
        if response is not None:
            response.close()


class DockerRuntime:
    """Docker SDK implementation of :class:`ContainerRuntime`.

    Clients are created lazily on first use and held by the instance, so
    constructing the runtime (and importing the API module) never requires a
    running daemon.  ``timeout`` applies to provisioning calls,
    ``control_timeout`` to kill, remove and inspect.
    """

    def __init__(
        self,
        timeout: float = 60,
        client: Optional[docker.DockerClient] = None,
        control_timeout: Optional[float] = None,
    ) -> None:
        self.timeout = timeout
        self.control_timeout = control_timeout
        self._client = client
        # An injected client serves both roles.
        self._control_client = client
        self._client_lock = threading.Lock()

    def _connect(self, timeout: float) -> docker.DockerClient:
        try:
            return docker.from_env(timeout=timeout)
        except DockerException as exc:
            raise RuntimeUnavailableError(f"Docker not available: {exc}") from exc

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = self._connect(self.timeout)
        return self._client

    @property
    def control_client(self) -> docker.DockerClient:
        if self.control_timeout is None:
            return self.client
        if self._control_client is None:
            with self._client_lock:
                if self._control_client is None:
                    self._control_client = self._connect(self.control_timeout)
        return self._control_client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (RuntimeUnavailableError, DockerException, RequestsConnectionError, ReadTimeout) as exc:
            logger.warning("Docker ping failed: %s", exc)
            return False

    def create(self, spec: UnitSpec) -> str:
        try:
            container = self.client.containers.create(
                spec.image,
                command=spec.command,
                name=spec.name,
                working_dir=WORKSPACE_MOUNT,
                volumes={str(spec.workspace_dir): {"bind": WORKSPACE_MOUNT, "mode": "rw"}},
                mem_limit=spec.memory_bytes,
                memswap_limit=spec.memory_bytes,
                cpu_period=spec.cpu_period,
                cpu_quota=spec.cpu_quota,
                pids_limit=spec.pids_limit,
                network_mode="none" if spec.network_disabled else None,
                network_disabled=spec.network_disabled,
                auto_remove=True,
                labels={MANAGED_LABEL: "true", **spec.labels},
                stdin_open=False,
                tty=False,
            )
        except ImageNotFound as exc:
            raise ProvisioningError(f"Execution image not found: {spec.image}") from exc
        except ReadTimeout as exc:
            raise ProvisioningError(f"Timed out creating container {spec.name}: {exc}") from exc
        except RequestsConnectionError as exc:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        except DockerException as exc:
            raise ProvisioningError(f"Failed to create container: {exc}") from exc
        return container.id

    def attach(self, unit_id: str) -> DockerOutputStream:
        try:
            sock = self.client.api.attach_socket(
                unit_id, params={"stdout": 1, "stderr": 1, "stream": 1}
            )
        except ReadTimeout as exc:
            raise ProvisioningError(f"Timed out attaching to container {unit_id}: {exc}") from exc
        except RequestsConnectionError as exc:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        except DockerException as exc:
            raise ProvisioningError(f"Failed to attach to container {unit_id}: {exc}") from exc
        return DockerOutputStream(sock)

    def start(self, unit_id: str) -> None:
        try:
            self.client.api.start(unit_id)
        except ReadTimeout as exc:
            raise ProvisioningError(f"Timed out starting container {unit_id}: {exc}") from exc
        except RequestsConnectionError as exc:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        except DockerException as exc:
            raise ProvisioningError(f"Failed to start container {unit_id}: {exc}") from exc

    def wait(self, unit_id: str, timeout: float) -> int:
        """Block until the unit exits; raises ``TimeoutError`` after ``timeout``."""
        try:
            status = self.client.api.wait(unit_id, timeout=max(timeout, 0.001))
        except NotFound:
            # Exited and auto-removed before the wait request arrived; the
            # exit marker in the output stream still carries the status.
            logger.debug("Container %s already removed when waited on", unit_id[:12])
            return UNKNOWN_STATUS
        except (ReadTimeout, RequestsConnectionError) as exc:
            raise TimeoutError(f"Container {unit_id} still running after {timeout:.3f}s") from exc
        return int(status.get("StatusCode", UNKNOWN_STATUS))

    def kill(self, unit_id: str) -> bool:
        try:
            self.control_client.api.kill(unit_id)
        except NotFound:
            return False
        except APIError as exc:
            if exc.status_code == 409:
                # Not running any more.
                return False
            raise
        except ReadTimeout as exc:
            raise TimeoutError(f"Kill of container {unit_id} timed out") from exc
        except RequestsConnectionError as exc:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        return True

    def remove(self, unit_id: str) -> bool:
        try:
            self.control_client.api.remove_container(unit_id, force=True)
        except NotFound:
            return False
        except APIError as exc:
            if exc.status_code == 409:
                # Auto-removal already in progress.
                return False
            raise
        except ReadTimeout as exc:
            raise TimeoutError(f"Removal of container {unit_id} timed out") from exc
        except RequestsConnectionError as exc:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        return True

    def exists(self, unit_id: str) -> bool:
        try:
            self.control_client.api.inspect_container(unit_id)
        except NotFound:
            return False
        except ReadTimeout as exc:
            raise TimeoutError(f"Inspect of container {unit_id} timed out") from exc
        except RequestsConnectionError as exc:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {exc}") from exc
        return True

    def list_managed(self) -> List[str]:
        try:
            containers = self.client.api.containers(
                all=True, filters={"label": f"{MANAGED_LABEL}=true"}
            )
        except (DockerException, RequestsConnectionError) as exc:
            raise RuntimeUnavailableError(f"Cannot list containers: {exc}") from exc
        return [c["Id"] for c in containers]
