"""
Shared fixtures: an in-memory container runtime and a wired-up service.

``FakeRuntime`` mimics the Docker runtime closely enough to exercise the
whole pipeline: it records every unit it creates and removes, snapshots the
workspace files a unit was given, emits multiplexed output frames (including
the exit marker the real shell command prints), and can hang until killed.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from coderunner.api.main import create_app
from coderunner.config import Config
from coderunner.executor.output import EXIT_MARKER, STDERR, STDOUT
from coderunner.executor.runtime import UnitSpec
from coderunner.service import ExecutionService

KILLED_STATUS = 137


@dataclass
class FakeProgram:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    hang: bool = False
    # Split each payload into frames of at most this many bytes.
    chunk_size: Optional[int] = None


@dataclass
class FakeUnit:
    id: str
    spec: UnitSpec
    program: FakeProgram
    files: Dict[str, str] = field(default_factory=dict)
    finished: threading.Event = field(default_factory=threading.Event)
    started: bool = False
    killed: bool = False
    removed: bool = False
    status: Optional[int] = None


class FakeStream:
    def __init__(self, unit: FakeUnit) -> None:
        self.unit = unit
        self.closed = False

    def __iter__(self) -> Iterator[Tuple[int, bytes]]:
        program = self.unit.program
        frames = [(STDOUT, program.stdout.encode("utf-8")), (STDERR, program.stderr.encode("utf-8"))]
        if not program.hang:
            frames.append((STDOUT, f"\n{EXIT_MARKER}:{program.exit_code}\n".encode()))
        for stream, payload in frames:
            size = program.chunk_size or max(len(payload), 1)
            for offset in range(0, len(payload), size):
                yield stream, payload[offset : offset + size]
        # End of stream once the unit stops, like a real attach socket.
        self.unit.finished.wait(10)

    def close(self) -> None:
        self.closed = True


class FakeRuntime:
    def __init__(self, program: Optional[FakeProgram] = None) -> None:
        self.program_for: Callable[[UnitSpec], FakeProgram] = lambda spec: program or FakeProgram()
        self.units: Dict[str, FakeUnit] = {}
        self.streams: List[FakeStream] = []
        self.available = True
        self.fail_create: Optional[Exception] = None
        self.fail_start: Optional[Exception] = None
        self.orphans: List[str] = []
        self._lock = threading.Lock()

    def respond(self, **kwargs) -> None:
        program = FakeProgram(**kwargs)
        self.program_for = lambda spec: program

    @property
    def created(self) -> int:
        return len(self.units)

    @property
    def live_units(self) -> List[str]:
        return [unit.id for unit in self.units.values() if not unit.removed]

    def only_unit(self) -> FakeUnit:
        assert len(self.units) == 1
        return next(iter(self.units.values()))

    def ping(self) -> bool:
        return self.available

    def create(self, spec: UnitSpec) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        unit_id = uuid.uuid4().hex * 2
        files = {p.name: p.read_text(encoding="utf-8") for p in Path(spec.workspace_dir).iterdir()}
        with self._lock:
            self.units[unit_id] = FakeUnit(unit_id, spec, self.program_for(spec), files)
        return unit_id

    def attach(self, unit_id: str) -> FakeStream:
        stream = FakeStream(self.units[unit_id])
        self.streams.append(stream)
        return stream

    def start(self, unit_id: str) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        unit = self.units[unit_id]
        unit.started = True
        if not unit.program.hang:
            unit.status = unit.program.exit_code
            unit.finished.set()

    def wait(self, unit_id: str, timeout: float) -> int:
        unit = self.units[unit_id]
        if not unit.finished.wait(timeout):
            raise TimeoutError(f"{unit_id} still running")
        return unit.status if unit.status is not None else -1

    def find(self, ref: str) -> Optional[FakeUnit]:
        with self._lock:
            unit = self.units.get(ref)
            if unit is None:
                unit = next((u for u in self.units.values() if u.spec.name == ref), None)
        return unit

    def kill(self, unit_id: str) -> bool:
        unit = self.find(unit_id)
        if unit is None or unit.removed or unit.finished.is_set():
            return False
        unit.killed = True
        unit.status = KILLED_STATUS
        unit.finished.set()
        return True

    def remove(self, unit_id: str) -> bool:
        if unit_id in self.orphans:
            self.orphans.remove(unit_id)
            return True
        unit = self.find(unit_id)
        if unit is None or unit.removed:
            return False
        unit.removed = True
        unit.finished.set()
        return True

    def exists(self, unit_id: str) -> bool:
        if unit_id in self.orphans:
            return True
        unit = self.find(unit_id)
        return unit is not None and not unit.removed

    def list_managed(self) -> List[str]:
        return list(self.orphans) + self.live_units


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(workspace_root=str(tmp_path / "workspaces"), kill_grace_ms=200)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def service(config, runtime) -> ExecutionService:
    return ExecutionService.from_config(config, runtime=runtime)


@pytest.fixture
def workspace_root(config) -> Path:
    return Path(config.workspace_root)


@pytest.fixture
def client(config, service):
    app = create_app(config, service)
    with TestClient(app) as test_client:
        yield test_client
