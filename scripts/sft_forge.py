#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp", "pydantic>=2.0.0"]
# ///
"""Line-addressed file forge: range edits with atomic commit, undo history, batches.

Every mutating action snapshots the file, validates the line range, writes the
new content to a temporary sibling and renames it over the target. Backed-up
operations can be rolled back by id until the 24h sweep reclaims them.

Usage:
    sft_forge.py forge <action> [params_json]
    sft_forge.py replace-lines <file> <start> <end> <content>
    sft_forge.py delete-lines <file> <start> <end>
    sft_forge.py insert-lines <file> <after> <content>
    sft_forge.py find-replace <file> <pattern> <replacement> [--regex]
    sft_forge.py read <file> [--start N] [--end N] [--chunk-size N]
    sft_forge.py create <file> [content] [--overwrite]
    sft_forge.py structures <file> [--type all|function|class|method|arrow]
    sft_forge.py diff <file1> <file2>
    sft_forge.py batch [operations_json]
    sft_forge.py multi <operation_type> <file>... [--params JSON]
    sft_forge.py stats
    sft_forge.py mcp-stdio

Examples:
    sft_forge.py replace-lines app.py 3 5 "x = 1"
    echo '[{"type": "copy", "source": "a.txt", "destination": "b.txt"}]' | sft_forge.py batch
    sft_forge.py forge generate_diff '{"file_path": "a.txt", "file_path_2": "b.txt"}'
    sft_forge.py multi validate_syntax config.json setup.toml
"""

import asyncio
import functools
import hashlib
import json
import os
import re
import shlex
import shutil
import sys
import time
import tomllib
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from pydantic import AliasChoices, BaseModel, Field, ValidationError

# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n")
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = ["forge"]  # CLI + MCP

CONFIG = {
    "project_root": os.environ.get("FORGE_ROOT", ""),
    "accelerator": os.environ.get("FORGE_ACCELERATOR", ""),
    "embedder": os.environ.get("FORGE_EMBEDDER", ""),
    "embeddings_dir": os.environ.get(
        "FORGE_EMBEDDINGS_DIR", str(Path.home() / ".sfb" / "forge" / "embeddings")
    ),
    "tool_timeout": float(os.environ.get("FORGE_TOOL_TIMEOUT", "30")),
    "backup_max_age_hours": 24,
    "diff_limit": 100,
    "default_chunk_size": 50,
    "history_recent": 10,
}

ACCELERATOR_TOOL = "file_assembler"

STRUCTURE_PATTERNS = {
    "function": (
        "function",
        re.compile(r"^\s*(?:export\s+)?(?:async\s+)?(?:function|def)\s+(\w+)\s*\("),
    ),
    "class": ("class", re.compile(r"^\s*(?:export\s+)?class\s+(\w+)")),
    "method": ("method", re.compile(r"^\s*(\w+)\s*\([^)]*\)\s*\{")),
    "arrow": (
        "arrow_function",
        re.compile(r"^\s*(?:export\s+)?(?:const|let)\s+(\w+)\s*=\s*(?:async\s*)?\([^)]*\)\s*=>"),
    ),
}

# Control-flow keywords look like `name(...) {` to the method pattern
METHOD_KEYWORDS = {"if", "for", "while", "switch", "catch", "with", "function", "return"}

COMPRESSION_LEVELS = {
    "light": [(r"[ \t]+", " "), (r"\n\s*\n", "\n")],
    "medium": [
        (r"/\*[\s\S]*?\*/", ""),
        (r"//.*$", ""),
        (r"^\s*\n", ""),
        (r"[ \t]+", " "),
    ],
    "aggressive": [
        (r"/\*[\s\S]*?\*/", ""),
        (r"//.*$", ""),
        (r"^\s*\n", ""),
        (r"\s+", " "),
        (r";\s*}", ";}"),
        (r"\{\s*", "{"),
        (r"\s*\}", "}"),
    ],
}


class Action(str, Enum):
    CREATE_FILE = "create_file"
    READ_FILE_CHUNKED = "read_file_chunked"
    REPLACE_LINES = "replace_lines"
    DELETE_LINES = "delete_lines"
    INSERT_LINES = "insert_lines"
    FIND_CODE_STRUCTURES = "find_code_structures"
    FIND_AND_REPLACE = "find_and_replace"
    GENERATE_DIFF = "generate_diff"
    BATCH_OPERATIONS = "batch_operations"
    PROCESS_MULTIPLE_FILES = "process_multiple_files"
    ROLLBACK_OPERATION = "rollback_operation"
    GET_PERFORMANCE_STATS = "get_performance_stats"
    PROCESS_FILE_COMPLETE = "process_file_complete"
    SMART_CREATE_EMBEDDING = "smart_create_embedding"
    HAS_EMBEDDING = "has_embedding"
    GET_EMBEDDING_CACHE_INFO = "get_embedding_cache_info"
    CLEANUP_FILE_EMBEDDING = "cleanup_file_embedding"


class MutationKind(str, Enum):
    REPLACE = "replace_lines"
    DELETE = "delete_lines"
    INSERT = "insert_lines"
    FIND_REPLACE = "find_and_replace"


class FsOpKind(str, Enum):
    COPY = "copy"
    MOVE = "move"
    DELETE = "delete"
    CREATE_DIRECTORY = "create_directory"


class FileOpKind(str, Enum):
    READ_CHUNKS = "read_chunks"
    FIND_STRUCTURES = "find_structures"
    BACKUP = "backup"
    CREATE_EMBEDDINGS = "create_embeddings"
    FIND_SIMILAR = "find_similar"
    PROCESS_COMPLETE = "process_complete"
    VALIDATE_SYNTAX = "validate_syntax"
    COMPRESS_CONTENT = "compress_content"
    BENCHMARK = "benchmark"
    CLEANUP_EMBEDDING = "cleanup_embedding"


FS_OP_ALIASES = {
    "make_directory": FsOpKind.CREATE_DIRECTORY,
    "mkdir": FsOpKind.CREATE_DIRECTORY,
}

FILE_OP_ALIASES = {
    "read_chunked": FileOpKind.READ_CHUNKS,
    "create_embedding": FileOpKind.CREATE_EMBEDDINGS,
    "assembler_benchmark": FileOpKind.BENCHMARK,
    "cleanup_file_embedding": FileOpKind.CLEANUP_EMBEDDING,
}


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


# --- Errors ---


class ForgeError(Exception):
    """Expected failure. `error_kind` is what callers see in the result."""

    error_kind = "Internal"


class NotFoundError(ForgeError):
    error_kind = "NotFound"


class InvalidRangeError(ForgeError):
    error_kind = "InvalidRange"


class AlreadyExistsError(ForgeError):
    error_kind = "AlreadyExists"


class MissingSnapshotError(ForgeError):
    error_kind = "MissingSnapshot"


class UnknownOperationError(ForgeError):
    error_kind = "UnknownOperation"


class CollaboratorError(ForgeError):
    error_kind = "CollaboratorFailure"


class InvalidParamsError(ForgeError):
    error_kind = "InvalidParams"


class InvalidPatternError(ForgeError):
    error_kind = "InvalidPattern"


class WriteVerificationError(ForgeError):
    error_kind = "WriteVerification"


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, ForgeError):
        return exc.error_kind
    if isinstance(exc, FileNotFoundError):
        return "NotFound"
    if isinstance(exc, FileExistsError):
        return "AlreadyExists"
    return "Internal"


def _failure(exc: BaseException, **extra: Any) -> dict[str, Any]:
    """Shape an exception as a failure result."""
    return {"success": False, "error": str(exc), "error_kind": _error_kind(exc), **extra}


def _latency(start_ms: float) -> float:
    return round(time.time() * 1000 - start_ms, 2)


def _log_failure(event: str, msg: str, exc: BaseException, start_ms: float):
    """Log a failed operation: WARN for expected errors, ERROR for anything else."""
    level = "ERROR" if _error_kind(exc) == "Internal" else "WARN"
    _log(
        level,
        event,
        msg,
        detail=str(exc),
        metrics=f"latency_ms={_latency(start_ms)} status=error",
    )


def _guarded(event: str):
    """Time an async operation, log it, and turn exceptions into failure results."""

    def decorate(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> dict[str, Any]:
            start_ms = time.time() * 1000
            try:
                result = await fn(*args, **kwargs)
            except Exception as e:
                _log_failure(event, type(e).__name__, e, start_ms)
                return _failure(e)
            status = "success" if result.get("success") else "failed"
            _log("INFO", event, "ok", metrics=f"latency_ms={_latency(start_ms)} status={status}")
            return result

        return wrapper

    return decorate


# --- Text helpers ---


def _hash(content: str) -> str:
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def _line_sep(content: str) -> str:
    """Terminator for new lines: whichever of CRLF and LF the file uses more."""
    crlf = content.count("\r\n")
    return "\r\n" if crlf > content.count("\n") - crlf else "\n"


def _split_lines(content: str) -> tuple[list[str], list[str]]:
    """Split on LF or CRLF, keeping each line's terminator.

    `ends[i]` follows `lines[i]`; the last line has none, so there is one
    fewer end than lines. A trailing terminator yields a final empty line.
    """
    return re.split(r"\r?\n", content), re.findall(r"\r?\n", content)


def _join_lines(lines: list[str], ends: list[str]) -> str:
    if not lines:
        return ""
    return "".join(line + end for line, end in zip(lines[:-1], ends)) + lines[-1]


def _splice(content: str, start: int, stop: int, new_lines: list[str]) -> str:
    """Replace `lines[start:stop]` (0-based) with `new_lines`.

    Kept lines keep their own terminators; inserted lines get `_line_sep`.
    """
    lines, ends = _split_lines(content)
    sep = _line_sep(content)
    # The old last line needs a terminator once anything follows it
    ends = ends + [sep]
    return _join_lines(
        lines[:start] + new_lines + lines[stop:],
        ends[:start] + [sep] * len(new_lines) + ends[stop:],
    )


def _count_lines(content: str) -> int:
    return len(_split_lines(content)[0])


def _as_lines(new_content: str | list[str]) -> list[str]:
    if isinstance(new_content, (list, tuple)):
        return [piece for line in new_content for piece in re.split(r"\r?\n", str(line))]
    return re.split(r"\r?\n", new_content)


def _check_span(start: int, end: int, total: int):
    if start < 1 or start > total:
        raise InvalidRangeError(f"Invalid start line: {start} (file has {total} lines)")
    if end < start or end > total:
        raise InvalidRangeError(
            f"Invalid end line: {end} (start {start}, file has {total} lines)"
        )


def _check_insert(after_line: int, total: int):
    if after_line < 0 or after_line > total:
        raise InvalidRangeError(
            f"Invalid insert position: {after_line} (valid 0-{total})"
        )


# --- File helpers (blocking; called through asyncio.to_thread) ---


def _read_text(path: Path, errors: str = "strict") -> str:
    """Read without newline translation so separators survive a round trip."""
    return path.read_bytes().decode("utf-8", errors=errors)


def _write_text(path: Path, content: str):
    path.write_bytes(content.encode("utf-8"))


def _write_backup(path: Path, content: str) -> Path:
    """Write content to a fresh `<path>.backup.<epoch-ms>` sibling and return it."""
    stamp = int(time.time() * 1000)
    data = content.encode("utf-8")
    while True:
        backup_path = path.with_name(f"{path.name}.backup.{stamp}")
        try:
            with open(backup_path, "xb") as f:
                f.write(data)
            return backup_path
        except FileExistsError:
            stamp += 1


def _tool_command(value: str | list[str] | None, fallback: str | None = None) -> list[str] | None:
    """Build an external tool command line.

    A list is used as-is (empty disables the tool). A string is split
    shell-style. Nothing configured falls back to `fallback` on PATH.
    """
    if isinstance(value, (list, tuple)):
        return list(value) or None
    if value:
        return shlex.split(value)
    if fallback:
        found = shutil.which(fallback)
        return [found] if found else None
    return None


# --- Data model ---


@dataclass(frozen=True)
class FileSnapshot:
    path: Path
    content: str
    hash: str
    size: int
    timestamp: float

    @classmethod
    def capture(cls, path: Path, content: str) -> "FileSnapshot":
        data = content.encode("utf-8")
        return cls(path, content, hashlib.md5(data).hexdigest(), len(data), time.time())


@dataclass
class OperationRecord:
    operation_id: str
    kind: MutationKind
    path: Path
    backup_path: Path | None
    snapshot: FileSnapshot | None
    timestamp: float

    def summary(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "type": self.kind.value,
            "path": str(self.path),
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "has_backup": self.backup_path is not None,
            "timestamp": self.timestamp,
        }


@dataclass
class MutationResult:
    operation_id: str
    kind: MutationKind
    path: Path
    total_lines: int
    file_hash: str
    backup_created: bool
    backup_path: Path | None = None
    details: dict[str, Any] = field(default_factory=dict)
    performance: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "operation_id": self.operation_id,
            "operation": self.kind.value,
            "file_path": str(self.path),
            **self.details,
            "total_lines": self.total_lines,
            "backup_created": self.backup_created,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "file_hash": self.file_hash,
            "performance": self.performance,
        }


class FsOperation(BaseModel):
    """One item of a filesystem batch."""

    type: str = Field(validation_alias=AliasChoices("type", "kind"))
    source: str | None = None
    destination: str | None = None
    target: str | None = None
    path: str | None = None


def _parse_kind(enum_cls: type[Enum], aliases: dict[str, Enum], raw: Any) -> Enum:
    if isinstance(raw, enum_cls):
        return raw
    if not isinstance(raw, str):
        raise UnknownOperationError(f"Unknown operation type: {raw!r}")
    key = raw.strip().lower().replace("-", "_")
    if key in aliases:
        return aliases[key]
    try:
        return enum_cls(key)
    except ValueError:
        raise UnknownOperationError(f"Unknown operation type: {raw}") from None


# --- Paths and locks ---


class PathResolver:
    """Maps relative paths onto the project root; absolute paths pass through."""

    def __init__(self, root: str | Path | None = None):
        base = Path(root).expanduser() if root else Path.cwd()
        self.root = base if base.is_absolute() else Path.cwd() / base

    def resolve(self, path: str | Path) -> Path:
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        resolved = self.root / candidate
        _log("DEBUG", "resolve", f"{path} -> {resolved}")
        return resolved


class PathLocks:
    """One asyncio.Lock per path. Mutating calls on the same path queue behind it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @property
    def active(self) -> int:
        return len(self._locks)

    @staticmethod
    def _key(path: Path) -> str:
        return os.path.normcase(os.path.realpath(path))

    @asynccontextmanager
    async def _acquire(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, *paths: Path):
        """Hold the locks of every path, taken in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted({self._key(p) for p in paths}):
                await stack.enter_async_context(self._acquire(key))
            yield


# --- External collaborators ---


class ExternalTool:
    """Subprocess collaborator: `<command> <operation> <json>` in, one JSON object out."""

    def __init__(self, name: str, command: list[str] | None, timeout: float):
        self.name = name
        self.command = command
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.command)

    async def call(self, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.command:
            raise CollaboratorError(f"{self.name} is not configured")
        start_ms = time.time() * 1000
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                operation,
                json.dumps(params),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CollaboratorError(f"{self.name} failed to start: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            _log(
                "WARN",
                "timeout",
                f"{self.name} {operation}",
                metrics=f"latency_ms={_latency(start_ms)} timeout_s={self.timeout}",
            )
            raise CollaboratorError(
                f"{self.name} {operation} timed out after {self.timeout}s"
            ) from None
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[:200]
            raise CollaboratorError(
                f"{self.name} {operation} exited {proc.returncode}: {message}"
            )
        try:
            payload = json.loads(stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CollaboratorError(f"{self.name} returned malformed output: {e}") from e
        if not isinstance(payload, dict) or "success" not in payload:
            raise CollaboratorError(f"{self.name} returned malformed output: no success flag")
        if not payload["success"]:
            raise CollaboratorError(
                f"{self.name} {operation} failed: {payload.get('error', 'unknown error')}"
            )
        _log(
            "DEBUG",
            "tool_call",
            f"{self.name} {operation}",
            metrics=f"latency_ms={_latency(start_ms)} status=success",
        )
        return payload


class FileIO:
    """Direct file I/O with the accelerator in front when one is configured."""

    def __init__(self, accelerator: ExternalTool):
        self.accelerator = accelerator

    async def read(self, path: Path, use_accelerator: bool = True) -> tuple[str, dict[str, Any]]:
        if use_accelerator and self.accelerator.available:
            try:
                payload = await self.accelerator.call("read", {"filepath": str(path)})
                content = payload.get("content")
                if not isinstance(content, str):
                    raise CollaboratorError("accelerator read returned no content")
                return content, {
                    "accelerated": True,
                    "read_time_us": payload.get("readTime_us"),
                    "performance_mb_per_sec": payload.get("performance_MB_per_sec"),
                }
            except CollaboratorError as e:
                _log("WARN", "accelerator_fallback", str(path), detail=str(e))
        if not path.is_file():
            raise NotFoundError(f"File not found: {path}")
        content = await asyncio.to_thread(_read_text, path)
        return content, {"accelerated": False}

    async def write(self, path: Path, content: str, use_accelerator: bool = True) -> dict[str, Any]:
        if use_accelerator and self.accelerator.available:
            try:
                payload = await self.accelerator.call(
                    "write", {"filepath": str(path), "content": content}
                )
                return {
                    "accelerated": True,
                    "write_time_us": payload.get("writeTime_us"),
                    "performance_mb_per_sec": payload.get("performance_MB_per_sec"),
                }
            except CollaboratorError as e:
                _log("WARN", "accelerator_fallback", str(path), detail=str(e))
        await asyncio.to_thread(_write_text, path, content)
        return {"accelerated": False}

    async def commit(self, path: Path, content: str) -> dict[str, Any]:
        """Write to a unique temporary sibling, verify it, then rename over `path`.

        A symlinked `path` is committed onto its target, leaving the link in place.
        """
        path = Path(os.path.realpath(path))
        tmp = path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex}")
        try:
            performance = await self.write(tmp, content)
            # BDA: the renamed file must hold exactly these bytes
            written = await asyncio.to_thread(tmp.read_bytes)
            if written != content.encode("utf-8"):
                raise WriteVerificationError(
                    f"BDA failed: content mismatch in {tmp} "
                    f"(wrote {len(content)} chars, read {len(written)} bytes)"
                )
            if path.exists():
                await asyncio.to_thread(shutil.copymode, path, tmp)
            await asyncio.to_thread(os.replace, tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return performance


# --- Operation history ---


class OperationHistory:
    """In-memory registry of backed-up mutations, keyed by operation id."""

    def __init__(self, locks: PathLocks, clock: Callable[[], float] = time.time):
        self.locks = locks
        self.clock = clock
        self.last_sweep: dict[str, Any] | None = None
        self._entries: dict[str, OperationRecord] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._entries

    def get(self, operation_id: str) -> OperationRecord | None:
        return self._entries.get(operation_id)

    def record(self, entry: OperationRecord):
        # uuid4 ids; a collision overwrites
        self._entries[entry.operation_id] = entry

    async def rollback(self, operation_id: str) -> dict[str, Any]:
        """Restore the snapshot of `operation_id`, drop its backup file and its entry."""
        start_ms = time.time() * 1000
        try:
            entry = self._entries.get(operation_id)
            if entry is None:
                raise NotFoundError(f"Operation not found: {operation_id}")
            if entry.snapshot is None:
                raise MissingSnapshotError(f"No snapshot for operation {operation_id}")
            async with self.locks.hold(entry.path):
                if operation_id not in self._entries:
                    raise NotFoundError(f"Operation not found: {operation_id}")
                await asyncio.to_thread(_write_text, entry.path, entry.snapshot.content)
                if entry.backup_path is not None:
                    await asyncio.to_thread(entry.backup_path.unlink, missing_ok=True)
                self._entries.pop(operation_id, None)
        except Exception as e:
            _log_failure("rollback", operation_id, e, start_ms)
            return _failure(e, operation_id=operation_id)

        _log(
            "INFO",
            "rollback",
            f"{operation_id} {entry.path}",
            metrics=f"latency_ms={_latency(start_ms)} status=success",
        )
        return {
            "success": True,
            "operation_id": operation_id,
            "restored_file": str(entry.path),
            "original_operation": entry.kind.value,
            "file_hash": entry.snapshot.hash,
            "rollback_time": self.clock(),
        }

    def sweep_expired(self, max_age_hours: float) -> dict[str, Any]:
        """Drop every entry at least `max_age_hours` old and delete its backup file.

        Backup deletion is best-effort: failures are logged, the entry still goes.
        """
        now = self.clock()
        cutoff = now - max_age_hours * 3600
        removed = []
        backups_deleted = 0
        for operation_id, entry in list(self._entries.items()):
            if entry.timestamp > cutoff:
                continue
            if entry.backup_path is not None and entry.backup_path.exists():
                try:
                    entry.backup_path.unlink()
                    backups_deleted += 1
                except OSError as e:
                    _log("WARN", "sweep", str(entry.backup_path), detail=str(e))
            del self._entries[operation_id]
            removed.append(operation_id)

        self.last_sweep = {
            "time": now,
            "cutoff_time": cutoff,
            "cleaned_count": len(removed),
        }
        if removed:
            _log("INFO", "sweep", f"removed={len(removed)} backups={backups_deleted}")
        return {
            "cleaned_count": len(removed),
            "backups_deleted": backups_deleted,
            "removed": removed,
            "cutoff_time": cutoff,
            "automatic": True,
        }

    def snapshot(self, recent: int = 10) -> dict[str, Any]:
        """Counters and the most recent entries, without file content."""
        operations = [entry.summary() for entry in self._entries.values()]
        return {
            "total_operations": len(operations),
            "operations": operations[-recent:] if recent > 0 else [],
            "oldest_operation": operations[0]["timestamp"] if operations else None,
            "newest_operation": operations[-1]["timestamp"] if operations else None,
        }


# --- Mutation engine ---


class MutationEngine:
    """Range-addressed edits committed atomically, with snapshot-backed undo."""

    def __init__(
        self,
        resolver: PathResolver,
        history: OperationHistory,
        locks: PathLocks,
        io: FileIO,
    ):
        self.resolver = resolver
        self.history = history
        self.locks = locks
        self.io = io

    async def replace_lines(
        self,
        file_path: str | Path,
        start: int,
        end: int,
        new_content: str | list[str],
        backup: bool = True,
    ) -> dict[str, Any]:
        """Replace the inclusive line range [start, end] with `new_content`."""

        def splice(content: str):
            _check_span(start, end, _count_lines(content))
            new_lines = _as_lines(new_content)
            return _splice(content, start - 1, end, new_lines), {
                "original_range": f"{start}-{end}",
                "replaced_lines": end - start + 1,
                "new_lines": len(new_lines),
                "line_delta": len(new_lines) - (end - start + 1),
            }

        return await self._mutate(MutationKind.REPLACE, file_path, splice, backup)

    async def delete_lines(
        self, file_path: str | Path, start: int, end: int, backup: bool = True
    ) -> dict[str, Any]:
        """Remove the inclusive line range [start, end]."""

        def splice(content: str):
            _check_span(start, end, _count_lines(content))
            return _splice(content, start - 1, end, []), {
                "deleted_range": f"{start}-{end}",
                "deleted_lines": end - start + 1,
                "line_delta": -(end - start + 1),
            }

        return await self._mutate(MutationKind.DELETE, file_path, splice, backup)

    async def insert_lines(
        self,
        file_path: str | Path,
        after_line: int,
        new_content: str | list[str],
        backup: bool = True,
    ) -> dict[str, Any]:
        """Insert `new_content` after line `after_line` (0 = before the first line)."""

        def splice(content: str):
            _check_insert(after_line, _count_lines(content))
            new_lines = _as_lines(new_content)
            return _splice(content, after_line, after_line, new_lines), {
                "insert_position": after_line,
                "inserted_lines": len(new_lines),
                "line_delta": len(new_lines),
            }

        return await self._mutate(MutationKind.INSERT, file_path, splice, backup)

    async def find_and_replace(
        self,
        file_path: str | Path,
        pattern: str,
        replacement: str,
        is_regex: bool = False,
        backup: bool = True,
    ) -> dict[str, Any]:
        """Replace every occurrence of `pattern` across the whole file.

        With zero matches the file is left alone and nothing is recorded.
        """

        def substitute(content: str):
            if not pattern:
                raise InvalidParamsError("search_pattern must not be empty")
            if is_regex:
                try:
                    regex = re.compile(pattern)
                except re.error as e:
                    raise InvalidPatternError(f"Invalid regex {pattern!r}: {e}") from e
                result, count = regex.subn(lambda _: replacement, content)
            else:
                parts = content.split(pattern)
                count = len(parts) - 1
                result = replacement.join(parts)
            details = {
                "search_pattern": pattern,
                "replacement": replacement,
                "is_regex": is_regex,
                "replacements": count,
                "line_delta": _count_lines(result) - _count_lines(content),
            }
            return (result if count else None), details

        return await self._mutate(MutationKind.FIND_REPLACE, file_path, substitute, backup)

    async def create_file(
        self, file_path: str | Path, content: str = "", overwrite: bool = False
    ) -> dict[str, Any]:
        """Create (or with `overwrite`, replace) a file through the atomic commit."""
        start_ms = time.time() * 1000
        path = self.resolver.resolve(file_path)
        try:
            async with self.locks.hold(path):
                existed = path.exists()
                if existed and not overwrite:
                    raise AlreadyExistsError(
                        f"File already exists: {path}. Set overwrite=true to replace."
                    )
                if path.is_dir():
                    raise InvalidParamsError(f"Path is a directory: {path}")
                await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
                performance = await self.io.commit(path, content)
        except Exception as e:
            _log_failure("create_file", str(path), e, start_ms)
            return _failure(e)

        size = len(content.encode("utf-8"))
        _log(
            "INFO",
            "create_file",
            str(path),
            metrics=f"latency_ms={_latency(start_ms)} status=success bytes={size}",
        )
        return {
            "success": True,
            "file_path": str(path),
            "created": not existed,
            "file_size": size,
            "lines_count": _count_lines(content),
            "file_hash": _hash(content),
            "performance": performance,
            "accelerator_used": performance.get("accelerated", False),
        }

    async def _mutate(
        self,
        kind: MutationKind,
        file_path: str | Path,
        transform: Callable[[str], tuple[str | None, dict[str, Any]]],
        backup: bool,
    ) -> dict[str, Any]:
        """Shared protocol: lock, read, snapshot, validate+splice, back up, commit, record.

        `transform` returns (new_content, details); new_content None means no-op.
        A failure during the write phase restores the snapshot directly.
        """
        start_ms = time.time() * 1000
        operation_id = str(uuid.uuid4())
        path = self.resolver.resolve(file_path)
        try:
            async with self.locks.hold(path):
                if not path.is_file():
                    raise NotFoundError(f"File not found: {path}")
                content = await asyncio.to_thread(_read_text, path)
                snapshot = FileSnapshot.capture(path, content) if backup else None
                new_content, details = transform(content)

                if new_content is None:
                    result = MutationResult(
                        operation_id,
                        kind,
                        path,
                        total_lines=_count_lines(content),
                        file_hash=_hash(content),
                        backup_created=False,
                        details=details,
                    )
                else:
                    backup_path = None
                    try:
                        if snapshot is not None:
                            backup_path = await asyncio.to_thread(
                                _write_backup, path, snapshot.content
                            )
                        performance = await self.io.commit(path, new_content)
                    except Exception:
                        if snapshot is not None:
                            await self._restore(path, snapshot, backup_path)
                        raise
                    if snapshot is not None:
                        self.history.record(
                            OperationRecord(
                                operation_id,
                                kind,
                                path,
                                backup_path,
                                snapshot,
                                timestamp=self.history.clock(),
                            )
                        )
                    result = MutationResult(
                        operation_id,
                        kind,
                        path,
                        total_lines=_count_lines(new_content),
                        file_hash=_hash(new_content),
                        backup_created=snapshot is not None,
                        backup_path=backup_path,
                        details=details,
                        performance=performance,
                    )
        except Exception as e:
            _log_failure(kind.value, str(path), e, start_ms)
            return _failure(e, operation_id=operation_id)

        _log(
            "INFO",
            kind.value,
            str(path),
            metrics=(
                f"latency_ms={_latency(start_ms)} status=success "
                f"lines={result.total_lines} backup={result.backup_created}"
            ),
        )
        return result.to_dict()

    async def _restore(self, path: Path, snapshot: FileSnapshot, backup_path: Path | None):
        try:
            await asyncio.to_thread(_write_text, path, snapshot.content)
        except OSError as e:
            # Keep the backup file: it is now the only copy of the original
            _log("ERROR", "restore", str(path), detail=str(e))
            return
        if backup_path is not None:
            await asyncio.to_thread(backup_path.unlink, missing_ok=True)
        _log("WARN", "restore", str(path), detail="restored snapshot after failed commit")


# --- Diff ---


class DiffEngine:
    """Positional line-by-line comparison of two files."""

    def __init__(self, resolver: PathResolver, limit: int = 100):
        self.resolver = resolver
        self.limit = limit

    @_guarded("generate_diff")
    async def diff(self, file_path_1: str | Path, file_path_2: str | Path) -> dict[str, Any]:
        path_1 = self.resolver.resolve(file_path_1)
        path_2 = self.resolver.resolve(file_path_2)
        if not path_1.is_file():
            raise NotFoundError(f"First file not found: {path_1}")
        if not path_2.is_file():
            raise NotFoundError(f"Second file not found: {path_2}")
        content_1 = await asyncio.to_thread(_read_text, path_1, "replace")
        content_2 = await asyncio.to_thread(_read_text, path_2, "replace")
        lines_1, _ = _split_lines(content_1)
        lines_2, _ = _split_lines(content_2)

        differences = []
        for i in range(max(len(lines_1), len(lines_2))):
            line_1 = lines_1[i] if i < len(lines_1) else ""
            line_2 = lines_2[i] if i < len(lines_2) else ""
            if line_1 == line_2:
                continue
            if not line_1:
                change = "added"
            elif not line_2:
                change = "deleted"
            else:
                change = "modified"
            differences.append(
                {"line_number": i + 1, "file1": line_1, "file2": line_2, "type": change}
            )

        return {
            "success": True,
            "file1": str(path_1),
            "file2": str(path_2),
            "total_differences": len(differences),
            "differences": differences[: self.limit],
            "identical": not differences,
            "file1_size": len(content_1.encode("utf-8")),
            "file2_size": len(content_2.encode("utf-8")),
            "file1_lines": len(lines_1),
            "file2_lines": len(lines_2),
        }


# --- Stateless per-file tools ---


class FileTools:
    """Read-only and side-file operations: chunked reads, scans, checks, backups."""

    def __init__(self, resolver: PathResolver, io: FileIO):
        self.resolver = resolver
        self.io = io

    def _existing(self, file_path: str | Path) -> Path:
        path = self.resolver.resolve(file_path)
        if not path.is_file():
            raise NotFoundError(f"File not found: {path}")
        return path

    @_guarded("read_file_chunked")
    async def read_chunked(
        self,
        file_path: str | Path,
        chunk_size: int = 50,
        start_line: int = 1,
        end_line: int | None = None,
        use_accelerator: bool = True,
    ) -> dict[str, Any]:
        if chunk_size < 1:
            raise InvalidParamsError(f"chunk_size must be positive, got {chunk_size}")
        if end_line is not None and end_line < 1:
            raise InvalidRangeError(f"Invalid end line: {end_line}")
        path = self.resolver.resolve(file_path)
        content, performance = await self.io.read(path, use_accelerator)
        lines, ends = _split_lines(content)
        total = len(lines)
        first = max(1, start_line)
        last = total if end_line is None else min(end_line, total)
        if first > total:
            raise InvalidRangeError(f"Start line {first} exceeds total lines {total}")

        chunks = []
        for i in range(first - 1, last, chunk_size):
            chunk = lines[i : min(i + chunk_size, last)]
            chunks.append(
                {
                    "start_line": i + 1,
                    "end_line": i + len(chunk),
                    "content": _join_lines(chunk, ends[i:]),
                    "line_count": len(chunk),
                }
            )
        return {
            "success": True,
            "file_path": str(path),
            "total_lines": total,
            "requested_range": f"{first}-{last}",
            "chunks": chunks,
            "chunk_count": len(chunks),
            "file_hash": _hash(content),
            "performance": performance,
            "accelerator_used": performance.get("accelerated", False),
        }

    @_guarded("find_code_structures")
    async def find_structures(
        self, file_path: str | Path, structure_type: str = "all"
    ) -> dict[str, Any]:
        if structure_type != "all" and structure_type not in STRUCTURE_PATTERNS:
            raise InvalidParamsError(
                f"Unknown structure_type: {structure_type}. "
                f"Use: all, {', '.join(STRUCTURE_PATTERNS)}"
            )
        path = self._existing(file_path)
        content = await asyncio.to_thread(_read_text, path, "replace")
        lines, _ = _split_lines(content)
        wanted = STRUCTURE_PATTERNS if structure_type == "all" else {
            structure_type: STRUCTURE_PATTERNS[structure_type]
        }

        structures = []
        for line_number, line in enumerate(lines, 1):
            for label, pattern in wanted.values():
                m = pattern.match(line)
                if not m:
                    continue
                if label == "method" and m.group(1) in METHOD_KEYWORDS:
                    continue
                structures.append(
                    {"type": label, "name": m.group(1), "line": line_number, "content": line.strip()}
                )
        return {
            "success": True,
            "file_path": str(path),
            "structure_type": structure_type,
            "total_structures": len(structures),
            "structures": structures,
            "file_size": len(content.encode("utf-8")),
            "total_lines": len(lines),
        }

    @_guarded("backup")
    async def backup(self, file_path: str | Path) -> dict[str, Any]:
        """Standalone backup file. Not tracked by the operation history."""
        path = self._existing(file_path)
        content = await asyncio.to_thread(_read_text, path)
        snapshot = FileSnapshot.capture(path, content)
        backup_path = await asyncio.to_thread(_write_backup, path, content)
        return {
            "success": True,
            "file_path": str(path),
            "backup_path": str(backup_path),
            "file_hash": snapshot.hash,
            "size": snapshot.size,
        }

    @_guarded("validate_syntax")
    async def validate_syntax(self, file_path: str | Path) -> dict[str, Any]:
        path = self._existing(file_path)
        content = await asyncio.to_thread(_read_text, path, "replace")
        ext = path.suffix.lower()
        errors: list[str] = []
        checked = True
        if ext == ".json":
            language = "JSON"
            try:
                json.loads(content)
            except json.JSONDecodeError as e:
                errors.append(str(e))
        elif ext == ".py":
            language = "Python"
            try:
                compile(content, str(path), "exec", dont_inherit=True)
            except (SyntaxError, ValueError) as e:
                errors.append(str(e))
        elif ext == ".toml":
            language = "TOML"
            try:
                tomllib.loads(content)
            except tomllib.TOMLDecodeError as e:
                errors.append(str(e))
        else:
            language = ext or "unknown"
            checked = False
        return {
            "success": True,
            "file_path": str(path),
            "language": language,
            "validation": {"is_valid": not errors, "errors": errors, "checked": checked},
            "file_size": len(content.encode("utf-8")),
            "line_count": _count_lines(content),
        }

    @_guarded("compress_content")
    async def compress_content(self, file_path: str | Path, level: str = "medium") -> dict[str, Any]:
        if level not in COMPRESSION_LEVELS:
            raise InvalidParamsError(
                f"Unknown compression level: {level}. Use: {', '.join(COMPRESSION_LEVELS)}"
            )
        path = self._existing(file_path)
        content = await asyncio.to_thread(_read_text, path, "replace")
        compressed = content
        for pattern, repl in COMPRESSION_LEVELS[level]:
            compressed = re.sub(pattern, repl, compressed, flags=re.MULTILINE)
        ratio = (1 - len(compressed) / len(content)) * 100 if content else 0.0
        return {
            "success": True,
            "file_path": str(path),
            "original_size": len(content),
            "compressed_size": len(compressed),
            "compression_ratio": round(ratio, 2),
            "level": level,
            "compressed_content": compressed,
        }

    @_guarded("benchmark")
    async def benchmark(self, file_path: str | Path) -> dict[str, Any]:
        """Time a direct read against an accelerator read of the same file."""
        path = self._existing(file_path)
        t0 = time.perf_counter()
        content = await asyncio.to_thread(_read_text, path, "replace")
        standard_ms = (time.perf_counter() - t0) * 1000

        accelerator = {"available": self.io.accelerator.available, "time_ms": 0.0, "performance": 0}
        speedup = 0.0
        if self.io.accelerator.available:
            t1 = time.perf_counter()
            try:
                payload = await self.io.accelerator.call("read", {"filepath": str(path)})
                accelerator["time_ms"] = round((time.perf_counter() - t1) * 1000, 3)
                accelerator["performance"] = payload.get("performance_MB_per_sec") or 0
                if accelerator["time_ms"] > 0:
                    speedup = round(standard_ms / accelerator["time_ms"], 3)
            except CollaboratorError as e:
                accelerator["error"] = str(e)
        return {
            "success": True,
            "file_path": str(path),
            "file_size": len(content.encode("utf-8")),
            "benchmark": {
                "accelerator": accelerator,
                "standard": {"time_ms": round(standard_ms, 3)},
                "speedup": speedup,
            },
        }


# --- Embeddings ---


class Embeddings:
    """Front for the embedding collaborator plus direct reads of its cache files."""

    def __init__(
        self,
        tool: ExternalTool,
        cache_dir: str | Path,
        resolver: PathResolver,
        tools: FileTools,
    ):
        self.tool = tool
        self.cache_dir = Path(cache_dir).expanduser()
        self.resolver = resolver
        self.tools = tools

    @property
    def _paths_file(self) -> Path:
        return self.cache_dir / "file_paths.json"

    @property
    def _index_file(self) -> Path:
        return self.cache_dir / "faiss_index.bin"

    def _cached_paths(self) -> list[str]:
        paths = json.loads(self._paths_file.read_text(encoding="utf-8"))
        if not isinstance(paths, list):
            raise ValueError(f"{self._paths_file} is not a list")
        return [str(p) for p in paths]

    def has(self, file_path: str | Path) -> bool:
        """Cache lookup without starting the collaborator."""
        if not self._paths_file.exists():
            return False
        path = self.resolver.resolve(file_path)
        try:
            return str(path.resolve()) in self._cached_paths()
        except (OSError, ValueError) as e:
            _log("DEBUG", "has_embedding", str(path), detail=str(e))
            return False

    def cache_info(self) -> dict[str, Any]:
        if not self._paths_file.exists() or not self._index_file.exists():
            return {
                "success": True,
                "cached_files": 0,
                "index_size_kb": 0,
                "last_updated": None,
                "status": "empty",
            }
        try:
            paths = self._cached_paths()
            stat = self._index_file.stat()
        except (OSError, ValueError) as e:
            _log("WARN", "embedding_cache_info", str(self.cache_dir), detail=str(e))
            return {
                "success": False,
                "error": str(e),
                "error_kind": "Internal",
                "cached_files": 0,
                "status": "error",
            }
        existing = [p for p in paths if os.path.exists(p)]
        return {
            "success": True,
            "cached_files": len(paths),
            "existing_files": len(existing),
            "missing_files": len(paths) - len(existing),
            "index_size_kb": round(stat.st_size / 1024),
            "last_updated": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
            "status": "active" if existing else "stale",
        }

    @_guarded("create_embedding")
    async def create(self, file_path: str | Path, force_recreate: bool = False) -> dict[str, Any]:
        path = self.resolver.resolve(file_path)
        return await self.tool.call(
            "create", {"filepath": str(path), "force_recreate": force_recreate}
        )

    @_guarded("find_similar")
    async def similar(self, file_path: str | Path, top_k: int = 5) -> dict[str, Any]:
        path = self.resolver.resolve(file_path)
        return await self.tool.call("similar", {"filepath": str(path), "top_k": top_k})

    @_guarded("cleanup_file_embedding")
    async def remove(self, file_path: str | Path) -> dict[str, Any]:
        path = self.resolver.resolve(file_path)
        return await self.tool.call("remove", {"filepath": str(path)})

    async def smart_create(self, file_path: str | Path, force_recreate: bool = False) -> dict[str, Any]:
        """Create an embedding only when the cache does not already hold one."""
        existing = self.has(file_path)
        if existing and not force_recreate:
            return {"success": True, "action": "skipped", "reason": "embedding_already_exists"}
        result = await self.create(file_path, force_recreate)
        result["action"] = ("recreated" if existing else "created") if result["success"] else "failed"
        return result

    @_guarded("process_file_complete")
    async def process_complete(self, file_path: str | Path) -> dict[str, Any]:
        """Read, embed, then look up similar files. Only a failed read fails the whole."""
        start_ms = time.time() * 1000
        stats: dict[str, float] = {}
        read = await self.tools.read_chunked(file_path)
        stats["read_time_ms"] = _latency(start_ms)
        if not read["success"]:
            return {"success": False, "error": read["error"], "error_kind": read["error_kind"]}

        embed_ms = time.time() * 1000
        created = await self.create(file_path)
        stats["embedding_time_ms"] = _latency(embed_ms)
        similar = None
        if created["success"]:
            similar_ms = time.time() * 1000
            similar = await self.similar(file_path, top_k=3)
            stats["similarity_search_time_ms"] = _latency(similar_ms)
        stats["total_time_ms"] = _latency(start_ms)

        similar_found = 0
        if similar and similar["success"]:
            similar_found = len(similar.get("similar_files") or [])
        return {
            "success": True,
            "results": {
                "file_read": read,
                "embedding_created": created,
                "similar_files": similar,
                "performance_stats": stats,
            },
            "summary": {
                "file_processed": read["file_path"],
                "chunks_created": read["chunk_count"],
                "embedding_status": "created" if created["success"] else "failed",
                "similar_files_found": similar_found,
                "total_processing_time_ms": stats["total_time_ms"],
            },
        }


# --- Batches ---


def _opt(params: dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present value among snake_case / camelCase spellings."""
    for name in names:
        if params.get(name) is not None:
            return params[name]
    return default


class BatchExecutor:
    """Sequential batches with per-item timing. One item's failure never stops the rest."""

    def __init__(
        self,
        resolver: PathResolver,
        history: OperationHistory,
        locks: PathLocks,
        tools: FileTools,
        embeddings: Embeddings,
        max_age_hours: float = 24,
    ):
        self.resolver = resolver
        self.history = history
        self.locks = locks
        self.tools = tools
        self.embeddings = embeddings
        self.max_age_hours = max_age_hours
        self._fs_handlers = {
            FsOpKind.COPY: self._fs_copy,
            FsOpKind.MOVE: self._fs_move,
            FsOpKind.DELETE: self._fs_delete,
            FsOpKind.CREATE_DIRECTORY: self._fs_create_directory,
        }
        self._file_handlers = {
            FileOpKind.READ_CHUNKS: self._op_read_chunks,
            FileOpKind.FIND_STRUCTURES: self._op_find_structures,
            FileOpKind.BACKUP: self._op_backup,
            FileOpKind.CREATE_EMBEDDINGS: self._op_create_embeddings,
            FileOpKind.FIND_SIMILAR: self._op_find_similar,
            FileOpKind.PROCESS_COMPLETE: self._op_process_complete,
            FileOpKind.VALIDATE_SYNTAX: self._op_validate_syntax,
            FileOpKind.COMPRESS_CONTENT: self._op_compress_content,
            FileOpKind.BENCHMARK: self._op_benchmark,
            FileOpKind.CLEANUP_EMBEDDING: self._op_cleanup_embedding,
        }
        assert set(self._fs_handlers) == set(FsOpKind), "every FsOpKind needs a handler"
        assert set(self._file_handlers) == set(FileOpKind), "every FileOpKind needs a handler"

    # Filesystem batch

    async def run_filesystem(self, operations: Any) -> dict[str, Any]:
        start_ms = time.time() * 1000
        if not isinstance(operations, list):
            _log("WARN", "batch_operations", "operations is not a list")
            return _failure(InvalidParamsError("operations must be a list"))

        results = []
        for raw in operations:
            item_ms = time.time() * 1000
            try:
                op = FsOperation.model_validate(raw)
                kind = _parse_kind(FsOpKind, FS_OP_ALIASES, op.type)
                result = await self._fs_handlers[kind](op)
            except ValidationError as e:
                first = e.errors()[0]
                where = ".".join(str(part) for part in first["loc"]) or "operation"
                result = _failure(InvalidParamsError(f"Malformed operation ({where}): {first['msg']}"))
            except Exception as e:
                _log("WARN", "batch_item", repr(raw)[:120], detail=str(e))
                result = _failure(e)
            results.append(
                {"operation": raw, "result": result, "processing_time_ms": _latency(item_ms)}
            )

        succeeded = sum(1 for r in results if r["result"]["success"])
        total_ms = _latency(start_ms)
        _log(
            "INFO",
            "batch_operations",
            f"items={len(results)}",
            metrics=f"latency_ms={total_ms} ok={succeeded} failed={len(results) - succeeded}",
        )
        return {
            "success": True,
            "total_operations": len(results),
            "successful_operations": succeeded,
            "failed_operations": len(results) - succeeded,
            "results": results,
            "total_processing_time_ms": total_ms,
        }

    def _fs_path(self, op: FsOperation, name: str, kind: FsOpKind) -> Path:
        value = getattr(op, name)
        if not value:
            raise InvalidParamsError(f"{kind.value} requires '{name}'")
        return self.resolver.resolve(value)

    async def _fs_copy(self, op: FsOperation) -> dict[str, Any]:
        source = self._fs_path(op, "source", FsOpKind.COPY)
        destination = self._fs_path(op, "destination", FsOpKind.COPY)
        async with self.locks.hold(destination):
            data = await asyncio.to_thread(source.read_bytes)
            await asyncio.to_thread(destination.write_bytes, data)
        return {
            "success": True,
            "source": str(source),
            "destination": str(destination),
            "size": len(data),
        }

    async def _fs_move(self, op: FsOperation) -> dict[str, Any]:
        source = self._fs_path(op, "source", FsOpKind.MOVE)
        destination = self._fs_path(op, "destination", FsOpKind.MOVE)
        async with self.locks.hold(source, destination):
            await asyncio.to_thread(os.replace, source, destination)
        return {"success": True, "source": str(source), "destination": str(destination)}

    async def _fs_delete(self, op: FsOperation) -> dict[str, Any]:
        target = self._fs_path(op, "target", FsOpKind.DELETE)
        async with self.locks.hold(target):
            await asyncio.to_thread(target.unlink)
        return {"success": True, "deleted": str(target)}

    async def _fs_create_directory(self, op: FsOperation) -> dict[str, Any]:
        path = self._fs_path(op, "path", FsOpKind.CREATE_DIRECTORY)
        await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        return {"success": True, "created": str(path)}

    # Multi-file batch

    async def run_multi_file(
        self,
        file_paths: Any,
        operation_type: Any,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        start_ms = time.time() * 1000
        if not isinstance(file_paths, list):
            _log("WARN", "process_multiple_files", "file_paths is not a list")
            return _failure(InvalidParamsError("file_paths must be a list"))
        params = params or {}
        cleanup = self.history.sweep_expired(self.max_age_hours)

        try:
            handler = self._file_handlers[_parse_kind(FileOpKind, FILE_OP_ALIASES, operation_type)]
            kind_error = None
        except UnknownOperationError as e:
            handler, kind_error = None, e

        results = []
        for file_path in file_paths:
            item_ms = time.time() * 1000
            if kind_error is not None:
                result = _failure(kind_error)
            elif not isinstance(file_path, str) or not file_path:
                result = _failure(InvalidParamsError(f"Invalid file path: {file_path!r}"))
            else:
                try:
                    result = await handler(file_path, params)
                except (TypeError, ValueError) as e:
                    result = _failure(InvalidParamsError(f"Bad operation_params: {e}"))
            results.append(
                {
                    "file_path": file_path,
                    "operation_type": operation_type,
                    "result": result,
                    "processing_time_ms": _latency(item_ms),
                }
            )

        succeeded = sum(1 for r in results if r["result"]["success"])
        total_ms = _latency(start_ms)
        _log(
            "INFO",
            "process_multiple_files",
            f"{operation_type} files={len(results)}",
            metrics=f"latency_ms={total_ms} ok={succeeded} failed={len(results) - succeeded}",
        )
        return {
            "success": True,
            "operation_type": operation_type,
            "total_files": len(results),
            "successful_operations": succeeded,
            "failed_operations": len(results) - succeeded,
            "total_processing_time_ms": total_ms,
            "average_time_per_file_ms": round(total_ms / len(results), 2) if results else 0.0,
            "results": results,
            "auto_cleanup": cleanup,
        }

    async def _op_read_chunks(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        end_line = _opt(params, "end_line", "endLine")
        return await self.tools.read_chunked(
            file_path,
            chunk_size=int(_opt(params, "chunk_size", "chunkSize", default=CONFIG["default_chunk_size"])),
            start_line=int(_opt(params, "start_line", "startLine", default=1)),
            end_line=int(end_line) if end_line is not None else None,
            use_accelerator=_opt(params, "use_accelerator", "useAssembler", default=True) is not False,
        )

    async def _op_find_structures(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.tools.find_structures(
            file_path, _opt(params, "structure_type", "structureType", default="all")
        )

    async def _op_backup(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.tools.backup(file_path)

    async def _op_create_embeddings(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        force = bool(_opt(params, "force_recreate", "forceRecreate", default=False))
        return await self.embeddings.create(file_path, force)

    async def _op_find_similar(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.embeddings.similar(file_path, int(_opt(params, "top_k", "topK", default=5)))

    async def _op_process_complete(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.embeddings.process_complete(file_path)

    async def _op_validate_syntax(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.tools.validate_syntax(file_path)

    async def _op_compress_content(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        level = _opt(params, "compression_level", "compressionLevel", default="medium")
        return await self.tools.compress_content(file_path, level)

    async def _op_benchmark(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.tools.benchmark(file_path)

    async def _op_cleanup_embedding(self, file_path: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.embeddings.remove(file_path)


# --- Action surface ---


def _require(params: dict[str, Any], *names: str):
    missing = [name for name in names if params.get(name) is None]
    if missing:
        raise InvalidParamsError(
            f"{', '.join(names)} required (missing: {', '.join(missing)})"
        )


def _int_param(params: dict[str, Any], name: str, default: int | None = None) -> int | None:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidParamsError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParamsError(f"{name} must be an integer, got {value!r}") from None


def _bool_param(params: dict[str, Any], name: str, default: bool) -> bool:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _content_param(params: dict[str, Any], name: str = "new_content") -> str | list[str]:
    value = params.get(name)
    if isinstance(value, (list, tuple)):
        return [str(line) for line in value]
    return "" if value is None else str(value)


class Forge:
    """Owns one of each service and maps named actions onto them.

    `dispatch` is the outer boundary: whatever happens, it returns a result dict.
    """

    def __init__(
        self,
        project_root: str | Path | None = None,
        accelerator: str | list[str] | None = None,
        embedder: str | list[str] | None = None,
        embeddings_dir: str | Path | None = None,
        tool_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        timeout = CONFIG["tool_timeout"] if tool_timeout is None else tool_timeout
        self.resolver = PathResolver(project_root or CONFIG["project_root"] or None)
        self.locks = PathLocks()
        self.history = OperationHistory(self.locks, clock=clock)
        self.io = FileIO(
            ExternalTool(
                "accelerator",
                _tool_command(
                    CONFIG["accelerator"] if accelerator is None else accelerator,
                    fallback=ACCELERATOR_TOOL,
                ),
                timeout,
            )
        )
        embed_tool = ExternalTool(
            "embedder",
            _tool_command(CONFIG["embedder"] if embedder is None else embedder),
            timeout,
        )
        self.engine = MutationEngine(self.resolver, self.history, self.locks, self.io)
        self.differ = DiffEngine(self.resolver, limit=CONFIG["diff_limit"])
        self.tools = FileTools(self.resolver, self.io)
        self.embeddings = Embeddings(
            embed_tool,
            embeddings_dir or CONFIG["embeddings_dir"],
            self.resolver,
            self.tools,
        )
        self.batch = BatchExecutor(
            self.resolver,
            self.history,
            self.locks,
            self.tools,
            self.embeddings,
            max_age_hours=CONFIG["backup_max_age_hours"],
        )
        self._handlers = {
            Action.CREATE_FILE: self._create_file,
            Action.READ_FILE_CHUNKED: self._read_file_chunked,
            Action.REPLACE_LINES: self._replace_lines,
            Action.DELETE_LINES: self._delete_lines,
            Action.INSERT_LINES: self._insert_lines,
            Action.FIND_CODE_STRUCTURES: self._find_code_structures,
            Action.FIND_AND_REPLACE: self._find_and_replace,
            Action.GENERATE_DIFF: self._generate_diff,
            Action.BATCH_OPERATIONS: self._batch_operations,
            Action.PROCESS_MULTIPLE_FILES: self._process_multiple_files,
            Action.ROLLBACK_OPERATION: self._rollback_operation,
            Action.GET_PERFORMANCE_STATS: self._get_performance_stats,
            Action.PROCESS_FILE_COMPLETE: self._process_file_complete,
            Action.SMART_CREATE_EMBEDDING: self._smart_create_embedding,
            Action.HAS_EMBEDDING: self._has_embedding,
            Action.GET_EMBEDDING_CACHE_INFO: self._get_embedding_cache_info,
            Action.CLEANUP_FILE_EMBEDDING: self._cleanup_file_embedding,
        }
        assert set(self._handlers) == set(Action), "every Action needs a handler"

    async def dispatch(self, action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        start_ms = time.time() * 1000
        try:
            if params is None:
                params = {}
            if not isinstance(params, dict):
                raise InvalidParamsError("params must be an object")
            try:
                handler = self._handlers[Action(action)]
            except ValueError:
                raise UnknownOperationError(f"Unknown action: {action}") from None
            result = await handler(params)
        except Exception as e:
            _log_failure("dispatch", str(action), e, start_ms)
            return _failure(e, action=action)
        status = "success" if result.get("success") else "failed"
        _log("DEBUG", "dispatch", str(action), metrics=f"latency_ms={_latency(start_ms)} status={status}")
        return result

    def performance_stats(self) -> dict[str, Any]:
        return {
            "success": True,
            "performance": {
                "active_locks": self.locks.active,
                "system_status": {
                    "project_root": str(self.resolver.root),
                    "accelerator_available": self.io.accelerator.available,
                    "embedder_available": self.embeddings.tool.available,
                    "embeddings_dir_exists": self.embeddings.cache_dir.exists(),
                },
            },
            "history": self.history.snapshot(CONFIG["history_recent"]),
            "auto_cleanup": {
                "backups_auto_cleaned_after_hours": self.batch.max_age_hours,
                "trigger": "process_multiple_files",
                "last_sweep": self.history.last_sweep,
            },
        }

    # Handlers: validate params, then call the owning service

    async def _create_file(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        options = p.get("operation_params") or {}
        overwrite = _bool_param(p, "overwrite", _bool_param(options, "overwrite", False))
        content = _content_param(p)
        if isinstance(content, list):
            content = "\n".join(content)
        result = await self.engine.create_file(p["file_path"], content, overwrite)
        embedding = None
        if result["success"] and _bool_param(p, "force_create_embedding", False) and content.strip():
            embedding = await self.embeddings.create(result["file_path"])
        if result["success"]:
            result["embedding_created"] = bool(embedding and embedding["success"])
        return result

    async def _read_file_chunked(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        if _bool_param(p, "force_create_embedding", False):
            await self.embeddings.create(p["file_path"])
        return await self.tools.read_chunked(
            p["file_path"],
            chunk_size=_int_param(p, "chunk_size", CONFIG["default_chunk_size"]),
            start_line=_int_param(p, "start_line", 1),
            end_line=_int_param(p, "end_line"),
            use_accelerator=_bool_param(p, "use_accelerator", True),
        )

    async def _replace_lines(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path", "start_line", "end_line", "new_content")
        return await self.engine.replace_lines(
            p["file_path"],
            _int_param(p, "start_line"),
            _int_param(p, "end_line"),
            _content_param(p),
            backup=_bool_param(p, "create_backup", True),
        )

    async def _delete_lines(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path", "start_line", "end_line")
        return await self.engine.delete_lines(
            p["file_path"],
            _int_param(p, "start_line"),
            _int_param(p, "end_line"),
            backup=_bool_param(p, "create_backup", True),
        )

    async def _insert_lines(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path", "start_line", "new_content")
        return await self.engine.insert_lines(
            p["file_path"],
            _int_param(p, "start_line"),
            _content_param(p),
            backup=_bool_param(p, "create_backup", True),
        )

    async def _find_code_structures(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        return await self.tools.find_structures(p["file_path"], p.get("structure_type") or "all")

    async def _find_and_replace(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path", "search_pattern", "replacement")
        return await self.engine.find_and_replace(
            p["file_path"],
            str(p["search_pattern"]),
            str(p["replacement"]),
            is_regex=_bool_param(p, "is_regex", False),
            backup=_bool_param(p, "create_backup", True),
        )

    async def _generate_diff(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path", "file_path_2")
        return await self.differ.diff(p["file_path"], p["file_path_2"])

    async def _batch_operations(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "operations")
        return await self.batch.run_filesystem(p["operations"])

    async def _process_multiple_files(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_paths", "operation_type")
        return await self.batch.run_multi_file(
            p["file_paths"], p["operation_type"], p.get("operation_params") or {}
        )

    async def _rollback_operation(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "operation_id")
        return await self.history.rollback(str(p["operation_id"]))

    async def _get_performance_stats(self, p: dict[str, Any]) -> dict[str, Any]:
        return self.performance_stats()

    async def _process_file_complete(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        return await self.embeddings.process_complete(p["file_path"])

    async def _smart_create_embedding(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        options = p.get("operation_params") or {}
        force = _bool_param(p, "force_recreate", bool(_opt(options, "force_recreate", "forceRecreate", default=False)))
        return await self.embeddings.smart_create(p["file_path"], force)

    async def _has_embedding(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        return {
            "success": True,
            "file_path": p["file_path"],
            "has_embedding": self.embeddings.has(p["file_path"]),
        }

    async def _get_embedding_cache_info(self, p: dict[str, Any]) -> dict[str, Any]:
        return self.embeddings.cache_info()

    async def _cleanup_file_embedding(self, p: dict[str, Any]) -> dict[str, Any]:
        _require(p, "file_path")
        return await self.embeddings.remove(p["file_path"])


def _forge_impl(action: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Run one action on a fresh Forge. History lives only for this call.

    CLI: forge (and the convenience subcommands)
    MCP: forge (long-lived instance, see _run_mcp)
    """
    return asyncio.run(Forge().dispatch(action, params or {}))


# =============================================================================
# CLI INTERFACE
# =============================================================================
def _stdin_or(value: str | None) -> str | None:
    """Return value, or stdin when value is '-' or missing and stdin is piped."""
    if value == "-" or (value is None and not sys.stdin.isatty()):
        return sys.stdin.read()
    return value


def _parse_json_arg(raw: str | None, what: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{what} is not valid JSON: {e}") from e


def main(argv: list[str] | None = None):
    import argparse

    parser = argparse.ArgumentParser(
        description="Line-addressed file edits with atomic commit, rollback and batches"
    )
    parser.add_argument("-V", "--version", action="version", version="1.0.0")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- mcp-stdio ---
    subparsers.add_parser("mcp-stdio", help="Run as MCP server")

    # --- forge ---
    p_forge = subparsers.add_parser("forge", help="Run any action with JSON params")
    p_forge.add_argument("action", help=", ".join(a.value for a in Action))
    p_forge.add_argument("params", nargs="?", default=None, help="JSON object ('-' = stdin)")

    # --- create ---
    p_create = subparsers.add_parser("create", help="Create a file")
    p_create.add_argument("file_path")
    p_create.add_argument("content", nargs="?", default=None)
    p_create.add_argument("-f", "--overwrite", action="store_true")

    # --- read ---
    p_read = subparsers.add_parser("read", help="Chunked read")
    p_read.add_argument("file_path")
    p_read.add_argument("-s", "--start", type=int, default=1)
    p_read.add_argument("-e", "--end", type=int, default=None)
    p_read.add_argument("-n", "--chunk-size", type=int, default=CONFIG["default_chunk_size"])
    p_read.add_argument("-A", "--no-accelerator", action="store_false", dest="use_accelerator")

    # --- replace-lines ---
    p_rl = subparsers.add_parser("replace-lines", help="Replace inclusive line range")
    p_rl.add_argument("file_path")
    p_rl.add_argument("start", type=int, help="Start line (1-based)")
    p_rl.add_argument("end", type=int, help="End line (inclusive)")
    p_rl.add_argument("content", nargs="?", default=None)
    p_rl.add_argument("-c", "--content", "--text", dest="content_named", default=None)
    p_rl.add_argument("-B", "--no-backup", action="store_false", dest="backup")

    # --- delete-lines ---
    p_dl = subparsers.add_parser("delete-lines", help="Delete inclusive line range")
    p_dl.add_argument("file_path")
    p_dl.add_argument("start", type=int, help="Start line (1-based)")
    p_dl.add_argument("end", type=int, help="End line (inclusive)")
    p_dl.add_argument("-B", "--no-backup", action="store_false", dest="backup")

    # --- insert-lines ---
    p_il = subparsers.add_parser("insert-lines", help="Insert after a line (0 = top)")
    p_il.add_argument("file_path")
    p_il.add_argument("after", type=int, help="Insert after this line (0-based position)")
    p_il.add_argument("content", nargs="?", default=None)
    p_il.add_argument("-c", "--content", "--text", dest="content_named", default=None)
    p_il.add_argument("-B", "--no-backup", action="store_false", dest="backup")

    # --- find-replace ---
    p_fr = subparsers.add_parser("find-replace", help="Replace every occurrence")
    p_fr.add_argument("file_path")
    p_fr.add_argument("pattern", help="Literal text or regex")
    p_fr.add_argument("replacement")
    p_fr.add_argument("-r", "--regex", action="store_true")
    p_fr.add_argument("-B", "--no-backup", action="store_false", dest="backup")

    # --- structures ---
    p_st = subparsers.add_parser("structures", help="Scan for code structures")
    p_st.add_argument("file_path")
    p_st.add_argument("-t", "--type", default="all", dest="structure_type")

    # --- diff ---
    p_diff = subparsers.add_parser("diff", help="Line-by-line diff of two files")
    p_diff.add_argument("file_path")
    p_diff.add_argument("file_path_2")

    # --- batch ---
    p_batch = subparsers.add_parser("batch", help="Filesystem batch (JSON list)")
    p_batch.add_argument("operations", nargs="?", default=None, help="JSON list ('-' = stdin)")

    # --- multi ---
    p_multi = subparsers.add_parser("multi", help="One operation across many files")
    p_multi.add_argument("operation_type", help=", ".join(k.value for k in FileOpKind))
    p_multi.add_argument("file_paths", nargs="*")
    p_multi.add_argument("-p", "--params", default=None, help="operation_params JSON")

    # --- stats ---
    subparsers.add_parser("stats", help="History and system status")

    args = parser.parse_args(argv)

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
            return

        if args.command == "forge":
            params = _parse_json_arg(_stdin_or(args.params), "params") or {}
            action = args.action
        elif args.command == "create":
            action = Action.CREATE_FILE.value
            params = {
                "file_path": args.file_path,
                "new_content": _stdin_or(args.content) or "",
                "overwrite": args.overwrite,
            }
        elif args.command == "read":
            action = Action.READ_FILE_CHUNKED.value
            params = {
                "file_path": args.file_path,
                "start_line": args.start,
                "end_line": args.end,
                "chunk_size": args.chunk_size,
                "use_accelerator": args.use_accelerator,
            }
        elif args.command in ("replace-lines", "insert-lines"):
            content = _stdin_or(args.content_named or args.content)
            assert content is not None, (
                f"content required. Usage: {args.command} <file> ... <content> or pipe via stdin"
            )
            if args.command == "replace-lines":
                action = Action.REPLACE_LINES.value
                params = {"start_line": args.start, "end_line": args.end}
            else:
                action = Action.INSERT_LINES.value
                params = {"start_line": args.after}
            params.update(
                file_path=args.file_path,
                new_content=content.rstrip("\n"),
                create_backup=args.backup,
            )
        elif args.command == "delete-lines":
            action = Action.DELETE_LINES.value
            params = {
                "file_path": args.file_path,
                "start_line": args.start,
                "end_line": args.end,
                "create_backup": args.backup,
            }
        elif args.command == "find-replace":
            action = Action.FIND_AND_REPLACE.value
            params = {
                "file_path": args.file_path,
                "search_pattern": args.pattern,
                "replacement": args.replacement,
                "is_regex": args.regex,
                "create_backup": args.backup,
            }
        elif args.command == "structures":
            action = Action.FIND_CODE_STRUCTURES.value
            params = {"file_path": args.file_path, "structure_type": args.structure_type}
        elif args.command == "diff":
            action = Action.GENERATE_DIFF.value
            params = {"file_path": args.file_path, "file_path_2": args.file_path_2}
        elif args.command == "batch":
            action = Action.BATCH_OPERATIONS.value
            params = {"operations": _parse_json_arg(_stdin_or(args.operations), "operations")}
        elif args.command == "multi":
            file_paths = args.file_paths
            if not file_paths and not sys.stdin.isatty():
                file_paths = [line.strip() for line in sys.stdin if line.strip()]
            action = Action.PROCESS_MULTIPLE_FILES.value
            params = {
                "file_paths": file_paths,
                "operation_type": args.operation_type,
                "operation_params": _parse_json_arg(args.params, "params") or {},
            }
        elif args.command == "stats":
            action = Action.GET_PERFORMANCE_STATS.value
            params = {}
        else:
            parser.print_help()
            sys.exit(1)

        result = _forge_impl(action, params)
        print(json.dumps(result, indent=2, default=str))
        sys.exit(0 if result.get("success") else 1)

    except (AssertionError, Exception) as e:
        _log("ERROR", args.command or "unknown", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================
def _run_mcp():
    from fastmcp import FastMCP

    mcp = FastMCP("forge")
    service = Forge()

    @mcp.tool()
    async def forge(
        action: str,
        file_path: str | None = None,
        start_line: int | None = None,
        end_line: int | None = None,
        new_content: str | list[str] | None = None,
        chunk_size: int | None = None,
        structure_type: str | None = None,
        operations: list[dict[str, Any]] | None = None,
        operation_id: str | None = None,
        create_backup: bool = True,
        search_pattern: str | None = None,
        replacement: str | None = None,
        is_regex: bool = False,
        file_path_2: str | None = None,
        file_paths: list[str] | None = None,
        operation_type: str | None = None,
        operation_params: dict[str, Any] | None = None,
        force_create_embedding: bool = False,
        overwrite: bool = False,
    ) -> str:
        """Line-addressed file forge: edit by line range with backup and rollback.

        Actions: create_file, read_file_chunked, replace_lines, delete_lines,
        insert_lines, find_code_structures, find_and_replace, generate_diff,
        batch_operations, process_multiple_files, rollback_operation,
        get_performance_stats, process_file_complete, smart_create_embedding,
        has_embedding, get_embedding_cache_info, cleanup_file_embedding.

        Mutating actions return operation_id; pass it to rollback_operation to undo.
        Relative paths resolve against the project root (FORGE_ROOT).

        Args:
            action: Action to run (see list above)
            file_path: Target file
            start_line: First line (1-based); for insert_lines the line to insert after (0 = top)
            end_line: Last line (inclusive)
            new_content: Replacement/inserted text, or a list of lines
            chunk_size: Lines per chunk for read_file_chunked (default 50)
            structure_type: all, function, class, method or arrow
            operations: batch_operations items {type: copy|move|delete|create_directory, source, destination, target, path}
            operation_id: Operation to roll back
            create_backup: Snapshot before mutating so the change can be rolled back
            search_pattern: Text or regex for find_and_replace
            replacement: Replacement text for find_and_replace
            is_regex: Treat search_pattern as a regular expression
            file_path_2: Second file for generate_diff
            file_paths: Files for process_multiple_files
            operation_type: read_chunks, find_structures, backup, create_embeddings, find_similar, process_complete, validate_syntax, compress_content, benchmark, cleanup_embedding
            operation_params: Extra options (chunk_size, start_line, end_line, structure_type, top_k, compression_level, force_recreate, overwrite)
            force_create_embedding: Also embed the file (create_file, read_file_chunked)
            overwrite: Allow create_file to replace an existing file
        """
        params = {
            "file_path": file_path,
            "start_line": start_line,
            "end_line": end_line,
            "new_content": new_content,
            "chunk_size": chunk_size,
            "structure_type": structure_type,
            "operations": operations,
            "operation_id": operation_id,
            "create_backup": create_backup,
            "search_pattern": search_pattern,
            "replacement": replacement,
            "is_regex": is_regex,
            "file_path_2": file_path_2,
            "file_paths": file_paths,
            "operation_type": operation_type,
            "operation_params": operation_params,
            "force_create_embedding": force_create_embedding,
            "overwrite": overwrite,
        }
        result = await service.dispatch(
            action, {k: v for k, v in params.items() if v is not None}
        )
        return json.dumps(result, indent=2, default=str)

    print("forge MCP server starting...", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
