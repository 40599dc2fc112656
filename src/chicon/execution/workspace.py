"""Host-side workspace layout.

The runner owns one directory tree on the host::

    <workspace>/
    ├── checkouts/<cache-key>/<generation>/   ← Repository Provisioner
    └── runs/<request-id>/
        ├── bin/process.<ext>                 ← script, mounted read-only
        └── result/data.toml                  ← result artifact

Run areas are created per execution and removed at teardown; checkouts
belong to the provisioner's cache.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from chicon.core.logging import get_logger

logger = get_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def safe_name(value: str) -> str:
    """Make *value* usable as a single path component."""
    cleaned = _UNSAFE.sub("_", value).strip(".")
    return cleaned or "_"


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files under *path* (symlinks not followed)."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                stat = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            total += stat.st_size
    return total


@dataclass(frozen=True)
class RunArea:
    """Per-execution host directories that get mounted into the sandbox."""

    root: Path
    bin_dir: Path
    result_dir: Path
    result_file: Path

    def write_script(self, file_name: str, content: str) -> Path:
        """Materialize script content as an opaque file; never interpreted here."""
        script = self.bin_dir / file_name
        script.write_text(content, encoding="utf-8")
        script.chmod(0o555)
        return script


class Workspace:
    """Owns the runner's on-disk tree.

    Example:
        >>> ws = Workspace("/var/lib/chicon")
        >>> area = ws.create_run_area("req-1", result_file="data.toml")
        >>> ws.release_run_area(area)
    """

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path).expanduser().resolve()

    @property
    def checkouts_dir(self) -> Path:
        return self.base_path / "checkouts"

    @property
    def runs_dir(self) -> Path:
        return self.base_path / "runs"

    def ensure(self) -> None:
        """Create the directory tree; fails if the base path is not a directory."""
        if self.base_path.exists() and not self.base_path.is_dir():
            raise NotADirectoryError(f"Workspace is not a directory: {self.base_path}")
        self.checkouts_dir.mkdir(parents=True, exist_ok=True)
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def create_run_area(self, request_id: str, *, result_file: str) -> RunArea:
        """Create fresh ``bin`` and ``result`` directories for one execution.

        The result file is created empty so it can be bind-mounted on its
        own when the sandbox only grants that single path.
        """
        root = self.runs_dir / safe_name(request_id)
        if root.exists():
            shutil.rmtree(root)
        bin_dir = root / "bin"
        result_dir = root / "result"
        bin_dir.mkdir(parents=True)
        result_dir.mkdir(parents=True)
        result_path = result_dir / result_file
        result_path.touch()
        # Containers may run as an arbitrary uid.
        result_dir.chmod(0o777)
        result_path.chmod(0o666)
        return RunArea(root=root, bin_dir=bin_dir, result_dir=result_dir, result_file=result_path)

    def release_run_area(self, area: RunArea) -> None:
        """Remove a run area. Idempotent."""
        shutil.rmtree(area.root, ignore_errors=True)
        logger.debug("workspace.run_area_released", path=str(area.root))

    def usage_bytes(self) -> int:
        """Current disk usage of the whole workspace."""
        if not self.base_path.exists():
            return 0
        return directory_size(self.base_path)

    def is_writable(self) -> bool:
        self.ensure()
        probe = self.base_path / ".write-probe"
        try:
            probe.write_text("ok", encoding="utf-8")
        except OSError:
            return False
        probe.unlink(missing_ok=True)
        return True
