"""Read-only file tools scoped to one project directory."""
from __future__ import annotations

import asyncio
import fnmatch
from pathlib import Path
from typing import Any, Dict, List

from testsmith.core.config import AnalysisConfig
from testsmith.tools.base import Tool

TEXT_SUFFIXES = {
    ".js", ".jsx", ".ts", ".tsx", ".vue", ".svelte", ".html", ".htm", ".css",
    ".scss", ".json", ".md", ".mjs", ".cjs", ".yaml", ".yml", ".txt",
}


class ProjectFiles:
    """File access confined to ``root``; paths outside it are rejected."""

    def __init__(self, root: Path, config: AnalysisConfig | None = None) -> None:
        self.root = Path(root).resolve()
        self.config = config or AnalysisConfig()

    def _resolve(self, relative: str) -> Path:
        target = (self.root / (relative or ".")).resolve()
        if target != self.root and self.root not in target.parents:
            raise PermissionError(f"path escapes project root: {relative}")
        return target

    def _ignored(self, path: Path) -> bool:
        parts = path.relative_to(self.root).parts
        return any(
            fnmatch.fnmatch(part, pattern)
            for part in parts
            for pattern in self.config.ignore
        )

    def _walk(self, base: Path, pattern: str):
        for path in sorted(base.glob(pattern)):
            if path.is_file() and not self._ignored(path):
                yield path

    def list_files(self, path: str = ".", pattern: str = "**/*") -> Dict[str, Any]:
        base = self._resolve(path)
        if not base.is_dir():
            raise NotADirectoryError(f"not a directory: {path}")
        limit = self.config.max_list_entries
        files: List[str] = []
        truncated = False
        for file in self._walk(base, pattern):
            if len(files) >= limit:
                truncated = True
                break
            files.append(file.relative_to(self.root).as_posix())
        return {"files": files, "count": len(files), "truncated": truncated}

    def read_file(self, path: str) -> Dict[str, Any]:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"no such file: {path}")
        limit = self.config.max_file_bytes
        raw = target.read_bytes()
        content = raw[:limit].decode("utf-8", errors="replace")
        return {
            "path": target.relative_to(self.root).as_posix(),
            "content": content,
            "size": len(raw),
            "truncated": len(raw) > limit,
        }

    def search_files(self, query: str, pattern: str = "**/*") -> Dict[str, Any]:
        if not query:
            raise ValueError("query must not be empty")
        needle = query.lower()
        limit = self.config.max_search_results
        matches: List[Dict[str, Any]] = []
        for file in self._walk(self.root, pattern):
            if file.suffix.lower() not in TEXT_SUFFIXES:
                continue
            try:
                lines = file.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError:
                continue
            for lineno, line in enumerate(lines, start=1):
                if needle in line.lower():
                    matches.append({
                        "path": file.relative_to(self.root).as_posix(),
                        "line": lineno,
                        "text": line.strip()[:200],
                    })
                    if len(matches) >= limit:
                        return {"matches": matches, "truncated": True}
        return {"matches": matches, "truncated": False}


def file_tools(files: ProjectFiles, timeout_s: float | None = None) -> List[Tool]:
    """Expose ``files`` as oracle tools; blocking I/O runs in a worker thread."""

    async def list_files(path: str = ".", pattern: str = "**/*") -> Dict[str, Any]:
        return await asyncio.to_thread(files.list_files, path, pattern)

    async def read_file(path: str) -> Dict[str, Any]:
        return await asyncio.to_thread(files.read_file, path)

    async def search_files(query: str, pattern: str = "**/*") -> Dict[str, Any]:
        return await asyncio.to_thread(files.search_files, query, pattern)

    return [
        Tool(
            name="list_files",
            description="List project files below a directory, optionally filtered by a glob pattern.",
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Directory relative to the project root"},
                    "pattern": {"type": "string", "description": "Glob pattern, e.g. 'src/**/*.jsx'"},
                },
                "required": [],
            },
            handler=list_files,
            timeout_s=timeout_s,
        ),
        Tool(
            name="read_file",
            description="Read a text file from the project (content is truncated for large files).",
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File path relative to the project root"},
                },
                "required": ["path"],
            },
            handler=read_file,
            timeout_s=timeout_s,
        ),
        Tool(
            name="search_files",
            description="Case-insensitive text search across project source files.",
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Text to search for"},
                    "pattern": {"type": "string", "description": "Glob pattern limiting which files are searched"},
                },
                "required": ["query"],
            },
            handler=search_files,
            timeout_s=timeout_s,
        ),
    ]
