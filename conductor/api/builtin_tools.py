"""Built-in workspace tools: bash, read_file, write_file.

All tools are confined to the configured workspace directory and return
the dispatcher's tool contract ({"success", "output", "error"}).  Failures
are returned, not raised, so the model sees them as ordinary results.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from conductor.api.tools import ToolDispatcher
from conductor.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _ok(output: str) -> dict[str, Any]:
    return {"success": True, "output": output}


def _fail(error: str) -> dict[str, Any]:
    return {"success": False, "error": error}


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


def resolve_workspace_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve path_str against workspace_dir.

    Raises ValueError if the result escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(command: str, timeout: int = 30, *, workspace_dir: str) -> dict[str, Any]:
    """Execute a shell command in the workspace directory.

    A non-zero exit status is a failed result carrying stderr (or stdout
    when stderr is empty) so the failure is visible to stuck detection.
    """
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))

    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )
    except OSError as e:
        return _fail(f"Error starting command: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return _fail(f"Command timed out after {effective_timeout}s: {command}")

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    if proc.returncode != 0:
        detail = stderr_text.strip() or stdout_text.strip() or "(no output)"
        return _fail(f"Command failed with exit code {proc.returncode}: {detail}")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    return _ok("\n".join(parts) if parts else "(no output)")


async def read_file_tool(
    path: str,
    offset: int = 0,
    limit: int = 0,
    *,
    workspace_dir: str,
) -> dict[str, Any]:
    """Read a file from the workspace, optionally a line range (offset/limit)."""
    try:
        target = resolve_workspace_path(path, workspace_dir)
    except ValueError as e:
        return _fail(str(e))

    if not target.exists():
        return _fail(f"File not found: {path}")
    if not target.is_file():
        return _fail(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        return _fail(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions."
        )

    try:
        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    except OSError as e:
        return _fail(f"Error reading file: {e}")

    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)

    return _ok(content if content else "(empty file)")


async def write_file_tool(path: str, content: str, *, workspace_dir: str) -> dict[str, Any]:
    """Write content to a file in the workspace, creating parent directories."""
    try:
        target = resolve_workspace_path(path, workspace_dir)
    except ValueError as e:
        return _fail(str(e))

    existed = target.exists()
    try:
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    except OSError as e:
        return _fail(f"Error writing file: {e}")

    # Phrased so the context compressor records it as a file change
    verb = "Updated" if existed else "Created"
    return _ok(f"{verb} file {path} ({len(content):,} bytes)")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file from the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "offset": {
            "type": "integer",
            "description": "Line offset to start reading from (0-indexed)",
            "default": 0,
            "minimum": 0,
        },
        "limit": {
            "type": "integer",
            "description": "Number of lines to read (0 = all)",
            "default": 0,
            "minimum": 0,
        },
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Create or overwrite a file in the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register bash, read_file and write_file bound to settings.workspace_dir."""
    workspace = settings.workspace_dir

    async def bash(command: str, timeout: int = 30) -> dict[str, Any]:
        return await bash_tool(command, timeout, workspace_dir=workspace)

    async def read_file(path: str, offset: int = 0, limit: int = 0) -> dict[str, Any]:
        return await read_file_tool(path, offset, limit, workspace_dir=workspace)

    async def write_file(path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(path, content, workspace_dir=workspace)

    dispatcher.register("bash", bash, _BASH_SCHEMA)
    dispatcher.register("read_file", read_file, _READ_FILE_SCHEMA)
    dispatcher.register("write_file", write_file, _WRITE_FILE_SCHEMA)
    logger.info("Registered built-in tools (workspace=%s)", workspace)
