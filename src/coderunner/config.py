"""Configuration loader.

The code runner reads its configuration from environment variables so the
same image can run under docker‑compose, on a VM next to the learning
platform, or from a developer shell.  Reasonable defaults are provided so that
local development works out of the box.

Environment variables:

``CODERUNNER_API_KEY``
    Shared secret used to authenticate incoming requests.  Clients must send
    it in the ``x-api-key`` header.  Empty disables the check.  ``/health`` is
    never authenticated so liveness checks keep working.

``CODERUNNER_WORKSPACE_ROOT``
    Base directory for per-execution workspaces.  Defaults to
    ``<tmpdir>/coderunner``.

``CODERUNNER_HOST_WORKSPACE_ROOT``
    Path of the workspace root as seen by the Docker daemon.  Only needed when
    the service itself runs in a container and talks to the host daemon
    through a mounted socket; bind mounts are then translated to this root.

``CODERUNNER_ALLOWED_LANGS``
    Comma‑separated subset of the built-in languages to expose.  Defaults to
    all of them.

``CODERUNNER_IMAGE_<LANG>``
    Overrides the execution image of one language, e.g.
    ``CODERUNNER_IMAGE_PYTHON=python:3.12-alpine``.

``CODERUNNER_MAX_TIMEOUT_MS``
    Global wall‑clock ceiling (milliseconds) for one execution.  Default 30000.

``CODERUNNER_MEMORY_LIMIT_MB``
    Hard memory limit per container.  Swap is disabled.  Default 128.

``CODERUNNER_CPU_QUOTA``
    CFS quota in microseconds per 100ms period.  Default 50000 (half a core).

``CODERUNNER_PIDS_LIMIT``
    Maximum number of processes inside a container.  Default 64.

``CODERUNNER_KILL_GRACE_MS``
    Budget for tearing a unit down: how long a killed container may take to
    disappear, how long output is drained after the program ends, and the
    timeout of the Docker calls that kill, remove and inspect containers.
    Default 500.

``CODERUNNER_MAX_CODE_BYTES``
    Largest accepted source payload.  Default 10 MiB.

``CODERUNNER_MAX_OUTPUT_BYTES``
    Most bytes kept per output stream (stdout, stderr) of one execution.
    Anything beyond is discarded and the output ends with a truncation
    notice.  Default 1 MiB.

``CODERUNNER_DOCKER_TIMEOUT``
    Timeout (seconds) for individual Docker API calls.  Default 60.

``CODERUNNER_DEBUG``
    If ``true``, 5xx responses carry a ``details`` field with the internal
    error message.  Never enable in production.

``CODERUNNER_LOG_LEVEL``
    Level of the ``coderunner`` logger.  Defaults to ``INFO``.

``CODERUNNER_CORS_ORIGINS``
    Comma‑separated list of allowed CORS origins.  Defaults to ``*``.

``HOST`` / ``PORT``
    Listening address used by ``python -m coderunner.api``.  Defaults to
    ``0.0.0.0:3001``.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .languages import BUILTIN_LANGUAGE_IDS


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str = ""
    workspace_root: str = field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "coderunner")
    )
    host_workspace_root: Optional[str] = None
    allowed_langs: List[str] = field(default_factory=lambda: list(BUILTIN_LANGUAGE_IDS))
    image_overrides: Dict[str, str] = field(default_factory=dict)
    max_timeout_ms: int = 30000
    memory_limit_mb: int = 128
    cpu_quota: int = 50000
    cpu_period: int = 100000
    pids_limit: int = 64
    kill_grace_ms: int = 500
    max_code_bytes: int = 10 * 1024 * 1024
    max_output_bytes: int = 1024 * 1024
    docker_timeout: int = 60
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 3001

    @classmethod
    def load(cls) -> "Config":
        api_key = os.getenv("CODERUNNER_API_KEY", "")

        workspace_root = os.getenv(
            "CODERUNNER_WORKSPACE_ROOT", str(Path(tempfile.gettempdir()) / "coderunner")
        )
        host_workspace_root = os.getenv("CODERUNNER_HOST_WORKSPACE_ROOT") or None

        allowed_langs = _parse_list(os.getenv("CODERUNNER_ALLOWED_LANGS")) or list(
            BUILTIN_LANGUAGE_IDS
        )
        unknown = [lang for lang in allowed_langs if lang not in BUILTIN_LANGUAGE_IDS]
        if unknown:
            raise ValueError(
                f"Invalid CODERUNNER_ALLOWED_LANGS: {', '.join(unknown)}. "
                f"Choose from {', '.join(BUILTIN_LANGUAGE_IDS)}."
            )

        image_overrides = {}
        for lang in BUILTIN_LANGUAGE_IDS:
            image = os.getenv(f"CODERUNNER_IMAGE_{lang.upper()}")
            if image:
                image_overrides[lang] = image

        def _int_var(name: str, default: int, minimum: int = 1) -> int:
            val = os.getenv(name)
            if val is None:
                return default
            try:
                parsed = int(val)
            except ValueError:
                raise ValueError(f"Invalid integer for {name}: {val}")
            if parsed < minimum:
                raise ValueError(f"{name} must be >= {minimum}, got {parsed}")
            return parsed

        log_level = os.getenv("CODERUNNER_LOG_LEVEL", "INFO").upper()
        cors_origins = [
            origin.strip()
            for origin in os.getenv("CODERUNNER_CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]

        return cls(
            api_key=api_key,
            workspace_root=workspace_root,
            host_workspace_root=host_workspace_root,
            allowed_langs=allowed_langs,
            image_overrides=image_overrides,
            max_timeout_ms=_int_var("CODERUNNER_MAX_TIMEOUT_MS", 30000),
            memory_limit_mb=_int_var("CODERUNNER_MEMORY_LIMIT_MB", 128, minimum=6),
            cpu_quota=_int_var("CODERUNNER_CPU_QUOTA", 50000, minimum=1000),
            pids_limit=_int_var("CODERUNNER_PIDS_LIMIT", 64),
            kill_grace_ms=_int_var("CODERUNNER_KILL_GRACE_MS", 500),
            max_code_bytes=_int_var("CODERUNNER_MAX_CODE_BYTES", 10 * 1024 * 1024),
            max_output_bytes=_int_var("CODERUNNER_MAX_OUTPUT_BYTES", 1024 * 1024),
            docker_timeout=_int_var("CODERUNNER_DOCKER_TIMEOUT", 60),
            debug=_parse_bool(os.getenv("CODERUNNER_DEBUG"), False),
            log_level=log_level,
            cors_origins=cors_origins or ["*"],
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int_var("PORT", 3001),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()

    @property
    def kill_grace_seconds(self) -> float:
        return self.kill_grace_ms / 1000
