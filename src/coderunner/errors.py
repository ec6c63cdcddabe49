"""Error taxonomy for the code runner.

Two families matter to callers:

* :class:`ClientError` – the request itself is unusable (missing fields,
  unknown language).  Raised before any workspace or container exists and
  mapped to HTTP 400.
* :class:`InfrastructureError` – the sandbox could not do its job (Docker
  unreachable, image missing, filesystem unwritable).  Mapped to HTTP 500.

Failures of the submitted program are not exceptions.  They are reported as
data (exit code, stderr) in an ordinary execution result.
"""

from __future__ import annotations

from typing import List, Sequence


class CodeRunnerError(Exception):
    """Base class for all code runner errors."""


class ClientError(CodeRunnerError):
    """The request was rejected before anything was executed."""


class UnsupportedLanguageError(ClientError):
    def __init__(self, language: str, supported: Sequence[str]) -> None:
        super().__init__(f"Unsupported language: {language}")
        self.language = language
        self.supported: List[str] = list(supported)


class InfrastructureError(CodeRunnerError):
    """The sandbox failed independently of the submitted program."""


class WorkspaceError(InfrastructureError):
    pass


class RuntimeUnavailableError(InfrastructureError):
    """The container runtime could not be reached."""


class ProvisioningError(InfrastructureError):
    """The container runtime refused to create, attach or start a unit."""
