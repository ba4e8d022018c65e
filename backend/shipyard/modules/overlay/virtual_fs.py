"""
Virtual Filesystem Overlay - per-request in-memory staging tree

Files proposed by the agent land here first. Nothing touches a real directory
until materialize() is called, so a failed build is abandoned by simply
discarding the overlay.

LIFECYCLE:
    new build  → VirtualOverlay.create()
    iteration  → await VirtualOverlay.seed_from(<cloned repo>)
               → apply_unified_diff(diff, overlay)
               → await materialize(overlay)  → caller owns the temp dir
    failure    → overlay.discard()
"""

import asyncio
import functools
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from shipyard.core.exceptions import OverlayDiscardedError, OverlaySeedError
from shipyard.core.logging_config import logger


SKIPPED_DIRECTORIES = {".git"}

Contents = Union[bytes, str]


@dataclass(frozen=True)
class OverlayFile:
    """One file of an overlay listing"""
    path: str
    contents: bytes

    @property
    def text(self) -> str:
        return self.contents.decode("utf-8", errors="replace")

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "content": self.text}


def normalize_path(path: str) -> str:
    """
    Normalize to a relative POSIX path.

    Raises ValueError for empty paths or paths escaping the overlay root.
    """
    raw = path.replace("\\", "/").strip()
    if not raw or raw.startswith("/"):
        raise ValueError(f"Invalid overlay path: {path!r}")

    parts: List[str] = []
    for part in PurePosixPath(raw).parts:
        if part in ("", "."):
            continue
        if part == "..":
            raise ValueError(f"Path traversal detected: {path!r}")
        parts.append(part)

    if not parts:
        raise ValueError(f"Invalid overlay path: {path!r}")
    return "/".join(parts)


class VirtualOverlay:
    """In-memory mapping of relative paths to bytes, owned by one request"""

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self._files: Dict[str, bytes] = dict(files or {})
        self._discarded = False
        self.source_dir: Optional[str] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(cls) -> "VirtualOverlay":
        return cls()

    @classmethod
    async def seed_from(cls, real_dir: Union[str, Path]) -> "VirtualOverlay":
        """Deep-copy every file under real_dir, preserving relative structure"""
        root = Path(real_dir)
        if not await aiofiles.os.path.isdir(root):
            raise OverlaySeedError(str(root), "source directory does not exist")

        overlay = cls()
        overlay.source_dir = str(root)
        try:
            paths = await asyncio.get_running_loop().run_in_executor(None, _walk_files, root)
            for relative, full_path in paths:
                async with aiofiles.open(full_path, "rb") as f:
                    overlay._files[relative] = await f.read()
        except OSError as e:
            raise OverlaySeedError(str(root), str(e))

        logger.debug(f"[Overlay] Seeded {len(overlay._files)} files from {root}")
        return overlay

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._discarded:
            raise OverlayDiscardedError()

    def write(self, path: str, contents: Contents) -> None:
        self._check_alive()
        if isinstance(contents, str):
            contents = contents.encode("utf-8")
        self._files[normalize_path(path)] = contents

    def read(self, path: str) -> bytes:
        self._check_alive()
        key = normalize_path(path)
        if key not in self._files:
            raise KeyError(key)
        return self._files[key]

    def read_text(self, path: str) -> str:
        return self.read(path).decode("utf-8")

    def exists(self, path: str) -> bool:
        return normalize_path(path) in self._files

    def delete(self, path: str) -> None:
        self._check_alive()
        key = normalize_path(path)
        if key not in self._files:
            raise KeyError(key)
        del self._files[key]

    def list_all(self) -> List[OverlayFile]:
        """Every file in the overlay, sorted by path"""
        self._check_alive()
        return [OverlayFile(path, self._files[path]) for path in sorted(self._files)]

    def __len__(self) -> int:
        return len(self._files)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, bytes]:
        self._check_alive()
        return dict(self._files)

    def restore(self, snapshot: Dict[str, bytes]) -> None:
        self._files = dict(snapshot)

    def discard(self) -> None:
        """Invalidate the overlay; later reads, writes and materialization raise"""
        self._files = {}
        self._discarded = True

    @property
    def discarded(self) -> bool:
        return self._discarded


def _raise_walk_error(error: OSError) -> None:
    raise error


def _walk_files(root: Path) -> List[Tuple[str, Path]]:
    """(relative posix path, absolute path) for every file under root, sorted"""
    found = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRECTORIES)
        for filename in sorted(filenames):
            full_path = Path(dirpath) / filename
            found.append((full_path.relative_to(root).as_posix(), full_path))
    return found


async def materialize(overlay: VirtualOverlay, prefix: str = "shipyard-build-") -> Path:
    """
    Write the overlay to a fresh temporary directory.

    The returned directory belongs to the caller.
    """
    files = overlay.list_all()
    root = Path(tempfile.mkdtemp(prefix=prefix))

    for item in files:
        target = root / item.path
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        async with aiofiles.open(target, "wb") as f:
            await f.write(item.contents)

    logger.info(f"[Overlay] Materialized {len(files)} files to {root}")
    return root


async def remove_directory(path: Union[str, Path]) -> None:
    """rmtree off the event loop; missing paths are ignored"""
    await asyncio.get_running_loop().run_in_executor(
        None, functools.partial(shutil.rmtree, path, ignore_errors=True)
    )
