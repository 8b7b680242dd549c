"""
Project File Access

Read-only access to the configured project directory for the file.*
actions and the project sync. Every path is resolved against the project
root and anything that lands outside it is rejected before touching disk.
"""

import asyncio
import fnmatch
import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import FileAccessError, ProjectNotConfiguredError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB

SKIP_DIRS = frozenset({"node_modules", ".git", "dist", "build", "__pycache__", ".venv", "venv"})


def _join(relative: str, name: str) -> str:
    if relative in ("", "."):
        return name
    return f"{relative.rstrip('/')}/{name}"


def _iso_mtime(stat: os.stat_result) -> str:
    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    return modified.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ProjectFiles:
    """Sandboxed, read-only view of one project directory"""

    def __init__(self, base_path: Optional[str]):
        self._base = Path(base_path).resolve() if base_path else None

    @property
    def base_path(self) -> Optional[str]:
        return str(self._base) if self._base else None

    @property
    def is_configured(self) -> bool:
        return self._base is not None

    def resolve(self, relative_path: str) -> Path:
        """
        Resolve a path inside the project

        Raises:
            ProjectNotConfiguredError: no project path configured
            FileAccessError: the path resolves outside the project
        """
        if self._base is None:
            raise ProjectNotConfiguredError()

        full_path = (self._base / (relative_path or ".")).resolve()
        if full_path != self._base and self._base not in full_path.parents:
            logger.warning(f"Rejected path outside project directory: {relative_path}")
            raise FileAccessError(details={"path": relative_path})
        return full_path

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def read_file(self, relative_path: str) -> Dict[str, Any]:
        """Returns {"content", "size"}"""
        full_path = self.resolve(relative_path)
        return await asyncio.to_thread(self._read_sync, full_path)

    async def list_files(self, relative_path: str = ".", recursive: bool = False) -> List[Dict[str, Any]]:
        self.resolve(relative_path)
        return await asyncio.to_thread(self._list_sync, relative_path or ".", recursive, frozenset())

    async def search_in_files(self, pattern: str, glob: str = "*") -> List[Dict[str, Any]]:
        """grep-like, case-insensitive search; returns [{"file", "matches"}]"""
        self.resolve(".")
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"Invalid search pattern: {e}")
        return await asyncio.to_thread(self._search_sync, regex, glob or "*")

    async def scan_project_structure(self) -> Dict[str, Any]:
        self.resolve(".")
        return await asyncio.to_thread(self._tree_sync, ".")

    async def scan_markdown_files(self) -> List[Dict[str, Any]]:
        """Returns [{"path", "content", "hash"}] with an MD5 content hash"""
        self.resolve(".")
        results: List[Dict[str, Any]] = []
        await asyncio.to_thread(self._markdown_sync, ".", results)
        return results

    # ------------------------------------------------------------------
    # Blocking helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _read_sync(self, full_path: Path) -> Dict[str, Any]:
        size = full_path.stat().st_size
        if size > MAX_FILE_SIZE:
            raise FileAccessError(f"File too large: {size} bytes (max {MAX_FILE_SIZE})")
        content = full_path.read_text(encoding="utf-8", errors="replace")
        return {"content": content, "size": size}

    def _list_sync(self, relative_path: str, recursive: bool, skip: frozenset) -> List[Dict[str, Any]]:
        full_path = self.resolve(relative_path)
        files: List[Dict[str, Any]] = []

        with os.scandir(full_path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                if entry.is_symlink():
                    continue
                is_dir = entry.is_dir(follow_symlinks=False)
                if is_dir and entry.name in skip:
                    continue

                entry_path = _join(relative_path, entry.name)
                info: Dict[str, Any] = {
                    "name": entry.name,
                    "path": entry_path,
                    "type": "directory" if is_dir else "file",
                }
                if entry.is_file(follow_symlinks=False):
                    stat = entry.stat(follow_symlinks=False)
                    info["size"] = stat.st_size
                    info["modified"] = _iso_mtime(stat)
                files.append(info)

                if recursive and is_dir:
                    files.extend(self._list_sync(entry_path, True, skip))

        return files

    def _search_sync(self, regex, glob: str) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        glob_lower = glob.lower()

        for info in self._list_sync(".", True, SKIP_DIRS):
            if info["type"] != "file":
                continue
            if glob != "*" and not fnmatch.fnmatchcase(info["name"].lower(), glob_lower):
                continue

            try:
                content = self._read_sync(self.resolve(info["path"]))["content"]
            except (OSError, FileAccessError) as e:
                logger.debug(f"Skipping unreadable file {info['path']}: {e}")
                continue

            matches = [
                f"{number}: {line.strip()}"
                for number, line in enumerate(content.split("\n"), start=1)
                if regex.search(line)
            ]
            if matches:
                results.append({"file": info["path"], "matches": matches})

        return results

    def _tree_sync(self, relative_path: str) -> Dict[str, Any]:
        full_path = self.resolve(relative_path)
        stat = full_path.stat()
        name = full_path.name or str(self._base)

        if full_path.is_file():
            return {
                "name": name,
                "path": relative_path,
                "type": "file",
                "size": stat.st_size,
                "modified": _iso_mtime(stat),
            }

        children = []
        with os.scandir(full_path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                if entry.name in SKIP_DIRS:
                    continue
                if entry.is_symlink():
                    continue
                children.append(self._tree_sync(_join(relative_path, entry.name)))

        return {
            "name": name,
            "path": relative_path,
            "type": "directory",
            "children": children,
        }

    def _markdown_sync(self, relative_path: str, results: List[Dict[str, Any]]):
        full_path = self.resolve(relative_path)

        with os.scandir(full_path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                entry_path = _join(relative_path, entry.name)

                if entry.is_dir(follow_symlinks=False):
                    if entry.name not in SKIP_DIRS:
                        self._markdown_sync(entry_path, results)
                elif entry.name.endswith(".md"):
                    try:
                        content = self._read_sync(self.resolve(entry_path))["content"]
                    except (OSError, FileAccessError) as e:
                        logger.warning(f"Failed to read MD file {entry_path}: {e}")
                        continue
                    digest = hashlib.md5(content.encode("utf-8")).hexdigest()
                    results.append({"path": entry_path, "content": content, "hash": digest})
