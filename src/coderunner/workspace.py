"""Per-execution workspaces on the local filesystem.

Every execution gets its own directory under a configurable root, named after
its execution id.  The directory holds exactly one source file and at most
one ``input.txt`` and is bind-mounted into the container at ``/workspace``.

When the service itself runs in a container and drives the host's Docker
daemon, the daemon resolves bind mounts against *its* filesystem.  In that
case ``host_root`` names the same directory as seen from the host and
:meth:`WorkspaceManager.host_path` translates accordingly.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import WorkspaceError
from .languages import LanguageProfile

logger = logging.getLogger("coderunner.workspace")

INPUT_FILENAME = "input.txt"


@dataclass
class Workspace:
    execution_id: str
    path: Path
    source_file: Optional[Path] = None
    input_file: Optional[Path] = None

    @property
    def has_input(self) -> bool:
        return self.input_file is not None


class WorkspaceManager:
    """Create, populate and destroy execution workspaces."""

    def __init__(self, root: str | Path, host_root: str | Path | None = None) -> None:
        self.root = Path(root)
        self.host_root = Path(host_root) if host_root else None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceError(f"Cannot create workspace root {self.root}: {exc}") from exc
        try:
            self.root.chmod(0o777)
        except PermissionError:
            logger.warning("Unable to chmod workspace root %s; continuing", self.root)

    def locate(self, execution_id: str) -> Workspace:
        """The workspace an execution id maps to, whether or not it exists yet."""
        return Workspace(execution_id=execution_id, path=self.root / execution_id)

    def create(self, execution_id: str) -> Workspace:
        path = self.locate(execution_id).path
        try:
            # exist_ok=False: an id collision must never hand out a shared directory.
            path.mkdir(parents=False, exist_ok=False)
            path.chmod(0o777)
        except OSError as exc:
            raise WorkspaceError(f"Cannot create workspace {path}: {exc}") from exc
        logger.debug("Created workspace %s", path)
        return Workspace(execution_id=execution_id, path=path)

    def write_source(self, workspace: Workspace, profile: LanguageProfile, code: str) -> Path:
        dest = workspace.path / profile.source_filename(code)
        self._write(dest, code)
        workspace.source_file = dest
        return dest

    def write_input(self, workspace: Workspace, text: Optional[str]) -> Optional[Path]:
        if not text:
            return None
        dest = workspace.path / INPUT_FILENAME
        self._write(dest, text)
        workspace.input_file = dest
        return dest

    def host_path(self, workspace: Workspace) -> Path:
        if self.host_root is None:
            return workspace.path.resolve()
        return self.host_root / workspace.path.relative_to(self.root)

    def destroy(self, workspace: Workspace) -> bool:
        """Remove the workspace directory.

        Safe to call repeatedly; a directory that is already gone counts as
        destroyed.  Failures are logged and reported as ``False``, never
        raised, since a leaked directory must not fail an otherwise finished
        execution.
        """
        try:
            shutil.rmtree(workspace.path)
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning(
                "Failed to remove workspace %s for execution %s: %s",
                workspace.path,
                workspace.execution_id,
                exc,
            )
            return False
        logger.debug("Removed workspace %s", workspace.path)
        return True

    def sweep(self) -> int:
        """Remove workspaces left behind by a previous process."""
        removed = 0
        for path in self.root.iterdir():
            if not path.is_dir():
                continue
            if self.destroy(Workspace(execution_id=path.name, path=path)):
                removed += 1
        if removed:
            logger.info("Swept %d stale workspace(s) from %s", removed, self.root)
        return removed

    def _write(self, dest: Path, content: str) -> None:
        try:
            dest.write_text(content, encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            raise WorkspaceError(f"Cannot write {dest}: {exc}") from exc
