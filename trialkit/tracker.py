"""
Change tracking for mutating operations.

Records which files an operation created and which it modified, so they
can be staged together afterwards or rolled back if the operation fails.
"""

import logging
from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]


class ChangeTracker:
    """Tracks created vs modified files, in first-seen order."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._created: list[Path] = []
        self._modified: list[Path] = []
        self._originals: dict[Path, bytes] = {}

    def track_created(self, path: PathLike) -> None:
        p = Path(path)
        if p in self._created or p in self._modified:
            return
        self._created.append(p)
        self.logger.debug(f"Tracking created file: {p}")

    def track_modified(self, path: PathLike) -> None:
        """Record a file about to be overwritten, keeping its original bytes."""
        p = Path(path)
        if p in self._created or p in self._modified:
            return
        if p.is_file():
            self._originals[p] = p.read_bytes()
        self._modified.append(p)
        self.logger.debug(f"Tracking modified file: {p}")

    def record(self, path: PathLike) -> None:
        """Track a path as created or modified depending on whether it exists now."""
        if Path(path).exists():
            self.track_modified(path)
        else:
            self.track_created(path)

    @property
    def created_files(self) -> list[Path]:
        return list(self._created)

    @property
    def modified_files(self) -> list[Path]:
        return list(self._modified)

    @property
    def all_files(self) -> list[Path]:
        return self._created + self._modified

    def __len__(self) -> int:
        return len(self._created) + len(self._modified)

    def stage(self, git, repo_dir: Path) -> None:
        """git add every tracked file that still exists."""
        paths = [str(p) for p in self.all_files if p.exists()]
        if paths:
            git.add(repo_dir, paths)

    def rollback(self) -> None:
        """Delete created files and restore modified ones."""
        for path in reversed(self._created):
            if path.exists():
                path.unlink()
                self.logger.info(f"Removed {path}")
        for path, original in self._originals.items():
            path.write_bytes(original)
            self.logger.info(f"Restored {path}")
        self._created.clear()
        self._modified.clear()
        self._originals.clear()
