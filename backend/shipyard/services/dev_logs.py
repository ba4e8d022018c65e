"""
Development stream logs.

In development every /message call gets a folder under LOGS_DIR named
`<traceId>_<epoch ms>` holding the relayed SSE frames, each applied diff and
the final file listing. A temporary trace folder is renamed when the trace is
promoted, so every folder of an application carries its `app-<id>.` prefix.
"""

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from shipyard.core.config import settings
from shipyard.core.logging_config import logger
from shipyard.modules.overlay.virtual_fs import OverlayFile
from shipyard.services.trace import belongs_to, parse_log_folder, trace_prefix


FRAME_SEPARATOR = "--------------------------------"
SSE_LOG_FILE = "sse_messages.log"
FILES_LOG_FILE = "files.json"


class DevLogSession:
    """Log folder of one request; every method is a no-op when disabled"""

    def __init__(self, base_dir: Path, trace_id: str, enabled: bool):
        self.base_dir = base_dir
        self.enabled = enabled
        self.trace_id = trace_id
        self.timestamp = int(time.time() * 1000)
        self._created = False

    @property
    def folder(self) -> Path:
        return self.base_dir / f"{self.trace_id}_{self.timestamp}"

    async def _ensure_folder(self) -> None:
        if not self._created:
            await aiofiles.os.makedirs(self.folder, exist_ok=True)
            self._created = True

    async def _write(self, name: str, text: str, mode: str = "w") -> None:
        if not self.enabled:
            return
        try:
            await self._ensure_folder()
            async with aiofiles.open(self.folder / name, mode, encoding="utf-8") as f:
                await f.write(text)
        except OSError as e:
            logger.warning(f"[DevLogs] Could not write {name} for {self.trace_id}: {e}")

    async def write_frame(self, raw: str) -> None:
        await self._write(SSE_LOG_FILE, f"{FRAME_SEPARATOR}\n\n{raw}\n\n", mode="a")

    async def write_diff(self, diff: str) -> None:
        await self._write(f"unified_diff-{int(time.time() * 1000)}.patch", f"{diff}\n\n")

    async def write_files(self, files: List[OverlayFile]) -> None:
        await self._write(FILES_LOG_FILE, json.dumps([f.to_dict() for f in files], indent=2))

    async def promote(self, trace_id: str) -> None:
        """Follow a temporary trace id to its application trace id"""
        if trace_id == self.trace_id:
            return
        old_folder = self.folder
        self.trace_id = trace_id
        if self.enabled and self._created:
            try:
                await aiofiles.os.rename(old_folder, self.folder)
            except OSError as e:
                logger.warning(f"[DevLogs] Could not rename {old_folder}: {e}")


class DevLogStore:
    """Reads and writes the development log folders"""

    def __init__(self, base_dir: Optional[Path] = None, enabled: Optional[bool] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else settings.LOGS_PATH
        self.enabled = settings.is_dev_mode() if enabled is None else enabled

    def open(self, trace_id: str) -> DevLogSession:
        return DevLogSession(self.base_dir, trace_id, self.enabled)

    async def list_folders(self, application_id: str) -> List[Dict[str, Any]]:
        """Log folders of an application, newest first"""
        if not await aiofiles.os.path.isdir(self.base_dir):
            return []

        prefix = trace_prefix(application_id)
        folders = []
        for name in await aiofiles.os.listdir(self.base_dir):
            if not name.startswith(prefix):
                continue
            parsed = parse_log_folder(name)
            if parsed is None:
                continue
            request_id, timestamp = parsed
            folders.append({
                "folderName": name,
                "traceId": name,
                "requestId": request_id,
                "timestamp": timestamp,
            })

        folders.sort(key=lambda f: f["timestamp"], reverse=True)
        return folders

    async def read_trace(self, application_id: str, trace_id: str) -> Dict[str, str]:
        """
        Contents of the folder(s) for trace_id, keyed by `<folder>/<file>`.

        trace_id may omit the `_<timestamp>` suffix, in which case every
        attempt with that trace id is returned.
        """
        contents: Dict[str, str] = {}
        for folder in await self.list_folders(application_id):
            name = folder["folderName"]
            if name != trace_id and not name.startswith(f"{trace_id}_"):
                continue
            if not belongs_to(name, application_id):
                continue
            folder_path = self.base_dir / name
            for file_name in sorted(os.listdir(folder_path)):
                async with aiofiles.open(folder_path / file_name, "r", encoding="utf-8", errors="replace") as f:
                    contents[f"{name}/{file_name}"] = await f.read()
        return contents


_dev_log_store: Optional[DevLogStore] = None


def get_dev_log_store() -> DevLogStore:
    global _dev_log_store
    if _dev_log_store is None:
        _dev_log_store = DevLogStore()
    return _dev_log_store
