"""Directory walking, file classification and timestamp helpers for content imports."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os


LOGGER = logging.getLogger(__name__)


AUDIO_EXTENSIONS = {
    ".mp3",
    ".wav",
    ".ogg",
    ".m4a",
    ".aac",
    ".flac",
    ".webm",
    ".aiff",
    ".aif",
    ".wma",
}

FORCED_BINARY_EXTENSIONS = {
    ".pdf",
    ".mid",
    ".midi",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".mscz",
    ".mxl",
    ".zip",
    ".sib",
    ".musx",
}

PROGRAM_EXTENSIONS = (".list", ".lst")

# Compared case-insensitively.
SKIP_FILE_NAMES = {"makefile", "index.html", ".ds_store", "thumbs.db", "desktop.ini"}
SKIP_DIR_NAMES = {".git", ".svn", ".hg", "node_modules", "__pycache__"}

MAX_TEXT_BYTES = 100 * 1024

GENERATED_DIR = "gen"

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class FileInfo:
    full_path: Path
    relative_path: str
    data: bytes
    is_text: bool

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


def normalize_title(name: str) -> str:
    return name.replace("_", " ").strip()


def title_key(value: str) -> str:
    """Return the case-folded lookup key used for unique title indexes."""

    value = unicodedata.normalize("NFC", value).strip().casefold()
    return _WHITESPACE_RE.sub(" ", value)


def derive_labels(relative_path: str) -> Tuple[str, str]:
    """Return ``(label, source_label)`` for a file inside an entity directory.

    The source label is the raw relative path. The human label drops a leading
    ``gen/`` folder and turns underscores into spaces.
    """

    source_label = relative_path.replace("\\", "/")
    trimmed = source_label
    prefix = GENERATED_DIR + "/"
    if trimmed.lower().startswith(prefix):
        trimmed = trimmed[len(prefix):]
    return normalize_title(trimmed), source_label


def is_valid_text(data: bytes) -> bool:
    if b"\x00" in data:
        return False
    return "\ufffd" not in data.decode("utf-8", errors="replace")


def is_binary_payload(name: str, data: bytes) -> bool:
    if Path(name).suffix.lower() in FORCED_BINARY_EXTENSIONS:
        return True
    if len(data) > MAX_TEXT_BYTES:
        return True
    return not is_valid_text(data)


def is_audio_file(name: str) -> bool:
    return Path(name).suffix.lower() in AUDIO_EXTENSIONS


def is_program_file(name: str) -> bool:
    return Path(name).suffix.lower() in PROGRAM_EXTENSIONS


def _is_skipped(name: str, *, is_dir: bool) -> bool:
    if name.startswith("."):
        return True
    lowered = name.lower()
    if is_dir:
        return lowered in SKIP_DIR_NAMES
    return lowered in SKIP_FILE_NAMES


async def _scan(directory: Path) -> List[os.DirEntry]:
    entries = await aiofiles.os.scandir(directory)
    with entries:
        return sorted(entries, key=lambda entry: entry.name)


async def list_directory(directory: Path) -> Tuple[List[Path], List[Path]]:
    """Return ``(files, subdirectories)`` of ``directory`` sorted by name.

    Hidden entries are dropped. A missing or unreadable directory yields two
    empty lists.
    """

    try:
        entries = await _scan(directory)
    except OSError as exc:
        LOGGER.warning("Failed to read directory %s: %s", directory, exc)
        return [], []
    files: List[Path] = []
    dirs: List[Path] = []
    for entry in entries:
        if entry.name.startswith("."):
            continue
        try:
            if entry.is_dir():
                dirs.append(Path(entry.path))
            elif entry.is_file():
                files.append(Path(entry.path))
        except OSError:
            LOGGER.debug("Skipping unreadable entry %s", entry.path)
    return files, dirs


async def read_file_bytes(path: Path) -> Optional[bytes]:
    try:
        async with aiofiles.open(path, "rb") as handle:
            return await handle.read()
    except OSError as exc:
        LOGGER.warning("Failed to read %s: %s", path, exc)
        return None


async def read_text_file(path: Path) -> Optional[str]:
    """Return the decoded contents of ``path``, or ``None`` when unreadable or binary."""

    data = await read_file_bytes(path)
    if data is None or is_binary_payload(path.name, data):
        return None
    return data.decode("utf-8")


async def collect_files(root_dir: Path, base_dir: Optional[Path] = None) -> List[FileInfo]:
    """Recursively collect importable files below ``root_dir``.

    Entries are visited in sorted name order. Unreadable files and directories
    are logged and skipped.
    """

    base_dir = base_dir or root_dir
    files: List[FileInfo] = []
    try:
        entries = await _scan(root_dir)
    except OSError as exc:
        LOGGER.warning("Failed to read directory %s: %s", root_dir, exc)
        return files

    for entry in entries:
        entry_path = Path(entry.path)
        try:
            is_dir = entry.is_dir()
        except OSError:
            LOGGER.debug("Skipping unreadable entry %s", entry_path)
            continue
        if _is_skipped(entry.name, is_dir=is_dir):
            continue
        if is_dir:
            files.extend(await collect_files(entry_path, base_dir))
            continue
        if is_audio_file(entry.name):
            continue
        data = await read_file_bytes(entry_path)
        if data is None:
            continue
        relative = entry_path.relative_to(base_dir).as_posix()
        files.append(
            FileInfo(
                full_path=entry_path,
                relative_path=relative,
                data=data,
                is_text=not is_binary_payload(entry.name, data),
            )
        )
    return files


def to_utc_millis(value: datetime) -> datetime:
    """Normalise a timestamp to an aware UTC datetime with millisecond precision.

    MongoDB stores dates with millisecond resolution and returns naive UTC
    values, so both sides of a comparison go through this first.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def timestamps_match(existing: Optional[datetime], candidate: datetime) -> bool:
    if existing is None:
        return False
    return to_utc_millis(existing) == to_utc_millis(candidate)


class TimestampStrategy:
    """Resolves the authorial timestamp of a source file."""

    async def created_at(self, path: Path) -> datetime:
        raise NotImplementedError


class MtimeTimestamps(TimestampStrategy):
    async def created_at(self, path: Path) -> datetime:
        stat = await aiofiles.os.stat(path)
        return to_utc_millis(datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc))


class GitTimestamps(TimestampStrategy):
    """Uses the last commit touching a file, falling back to its mtime.

    Useful for checkouts and extracted archives where every file shares the
    same filesystem mtime.
    """

    def __init__(self, git_binary: str = "git", fallback: Optional[TimestampStrategy] = None) -> None:
        self.git_binary = git_binary
        self.fallback = fallback or MtimeTimestamps()
        self._cache: Dict[Path, datetime] = {}

    async def _commit_time(self, path: Path) -> Optional[datetime]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                "log",
                "-1",
                "--format=%cI",
                "--",
                path.name,
                cwd=str(path.parent),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await proc.communicate()
        except OSError as exc:
            LOGGER.debug("git unavailable for %s: %s", path, exc)
            return None
        if proc.returncode != 0:
            return None
        text = stdout.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        try:
            return to_utc_millis(datetime.fromisoformat(text))
        except ValueError:
            LOGGER.debug("Unparseable git timestamp %r for %s", text, path)
            return None

    async def created_at(self, path: Path) -> datetime:
        cached = self._cache.get(path)
        if cached is not None:
            return cached
        value = await self._commit_time(path)
        if value is None:
            value = await self.fallback.created_at(path)
        self._cache[path] = value
        return value
