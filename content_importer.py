"""Import pipeline: speeches, activities, song directories, programs and resync."""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

import aiofiles.os

from blob_store import BlobStore
from content_scanner import (
    MtimeTimestamps,
    TimestampStrategy,
    collect_files,
    derive_labels,
    is_audio_file,
    list_directory,
    normalize_title,
    read_text_file,
)
from content_store import (
    DEFAULT_IMPORT_USER,
    KIND_ACTIVITY,
    KIND_PROGRAM,
    KIND_SONG,
    KIND_SPEECH,
    STATUS_CREATED,
    STATUS_CREATED_BINARY,
    STATUS_EXISTS,
    STATUS_FAILED,
    STATUS_WOULD_CREATE,
    STATUS_WOULD_CREATE_BINARY,
    STATUS_WOULD_UPDATE,
    ChangeKind,
    ContentImportError,
    ContentStore,
    ImportOutcome,
    LineageBuilder,
    SongRecord,
    VersionRecord,
    classify_change,
    program_url,
    version_url,
)
from program_resolver import ProgramResolver, ProgramSource, concrete_ids, read_program_sources


LOGGER = logging.getLogger(__name__)

SPEECH_CONCURRENCY = 8
SONG_DIR_CONCURRENCY = 4

ACTIVITY_EXTENSIONS = (".md", ".txt", "")

SPEECH_TAGS = ("speech",)
ACTIVITY_TAGS = ("activity",)

T = TypeVar("T")

ResultCallback = Callable[[ImportOutcome], None]


async def run_with_limit(items: Iterable[T], limit: int, worker: Callable[[T], Awaitable[None]]) -> None:
    """Run ``worker`` over ``items`` with at most ``limit`` calls in flight."""

    limit = max(1, limit)
    pending = set()
    try:
        for item in items:
            pending.add(asyncio.ensure_future(worker(item)))
            if len(pending) >= limit:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    task.result()
        if pending:
            await asyncio.gather(*pending)
            pending = set()
    finally:
        for task in pending:
            task.cancel()


@dataclass
class SongsDirConfig:
    path: Path
    tags: List[str] = field(default_factory=lambda: ["song"])


@dataclass
class ImportSources:
    songs_dirs: List[SongsDirConfig] = field(default_factory=list)
    speeches_dirs: List[Path] = field(default_factory=list)
    programs_dirs: List[Path] = field(default_factory=list)
    activities_file: Optional[Path] = None


@dataclass
class ImportSummary:
    entity_results: List[ImportOutcome] = field(default_factory=list)
    speech_results: List[ImportOutcome] = field(default_factory=list)
    activity_results: List[ImportOutcome] = field(default_factory=list)
    program_results: List[ImportOutcome] = field(default_factory=list)
    resync_results: List[ImportOutcome] = field(default_factory=list)

    def all_results(self) -> List[ImportOutcome]:
        return (
            self.speech_results
            + self.activity_results
            + self.entity_results
            + self.program_results
            + self.resync_results
        )

    def counts(self) -> Dict[str, Dict[str, int]]:
        stages = {
            "songs": self.entity_results,
            "speeches": self.speech_results,
            "activities": self.activity_results,
            "programs": self.program_results,
            "resync": self.resync_results,
        }
        return {name: dict(Counter(result.status for result in results)) for name, results in stages.items()}


def plan_file_status(change: ChangeKind, is_text: bool, dry_run: bool) -> str:
    """Map a change decision to the status reported for it.

    Dry-run statuses predict the real-run ones: ``would-create``/``would-update``
    become ``created`` (or ``created-binary``) once applied.
    """

    if not change.needs_write:
        return STATUS_EXISTS
    if dry_run:
        if change is ChangeKind.CHANGED:
            return STATUS_WOULD_UPDATE
        return STATUS_WOULD_CREATE if is_text else STATUS_WOULD_CREATE_BINARY
    return STATUS_CREATED if is_text else STATUS_CREATED_BINARY


@dataclass
class _Payload:
    path: Path
    label: str
    source_label: str
    is_text: bool
    data: bytes
    content: Optional[str] = None


def _safe_callback(on_result: Optional[ResultCallback]) -> ResultCallback:
    def emit(outcome: ImportOutcome) -> None:
        if on_result is None:
            return
        try:
            on_result(outcome)
        except Exception:
            LOGGER.exception("Result callback failed for %s", outcome.title)

    return emit


class ContentImporter:
    def __init__(
        self,
        store: ContentStore,
        lineage: LineageBuilder,
        resolver: Optional[ProgramResolver] = None,
        blob_store: Optional[BlobStore] = None,
        timestamps: Optional[TimestampStrategy] = None,
        created_by: Optional[str] = DEFAULT_IMPORT_USER,
        speech_concurrency: int = SPEECH_CONCURRENCY,
        song_dir_concurrency: int = SONG_DIR_CONCURRENCY,
    ) -> None:
        self.store = store
        self.lineage = lineage
        self.resolver = resolver or ProgramResolver(store, lineage, created_by)
        self.blob_store = blob_store
        self.timestamps = timestamps or MtimeTimestamps()
        self.created_by = created_by
        self.speech_concurrency = speech_concurrency
        self.song_dir_concurrency = song_dir_concurrency

    async def import_from_directories(
        self,
        sources: ImportSources,
        dry_run: bool,
        on_result: Optional[ResultCallback] = None,
    ) -> ImportSummary:
        """Run every import stage in order.

        Songs are imported before programs so playlist references resolve, and
        the resync pass runs last so programs pick up songs created meanwhile.
        Each outcome is passed to ``on_result`` as soon as it is known.
        """

        summary = ImportSummary()
        emit = _safe_callback(on_result)

        for speeches_dir in sources.speeches_dirs:
            files, _ = await list_directory(Path(speeches_dir))

            async def import_speech(path: Path) -> None:
                outcome = await self.import_speech_file(path, dry_run=dry_run)
                if outcome is not None:
                    summary.speech_results.append(outcome)
                    emit(outcome)

            await run_with_limit(files, self.speech_concurrency, import_speech)

        if sources.activities_file:
            summary.activity_results.extend(
                await self.import_activities(
                    Path(sources.activities_file),
                    [Path(path) for path in sources.speeches_dirs],
                    dry_run=dry_run,
                    on_result=emit,
                )
            )

        for songs_config in sources.songs_dirs:
            _, song_dirs = await list_directory(Path(songs_config.path))

            async def import_directory(song_dir: Path, tags: Sequence[str] = tuple(songs_config.tags)) -> None:
                results = await self.import_song_directory(song_dir, tags, dry_run=dry_run, on_result=emit)
                summary.entity_results.extend(results)

            await run_with_limit(song_dirs, self.song_dir_concurrency, import_directory)

        program_dirs = [Path(path) for path in sources.programs_dirs]
        for source in await read_program_sources(program_dirs):
            outcome = await self.import_program(source, dry_run=dry_run)
            summary.program_results.append(outcome)
            emit(outcome)

        if program_dirs:
            summary.resync_results.extend(
                await self.resolver.resync(program_dirs, dry_run=dry_run, on_result=emit)
            )
        return summary

    # Single files

    async def import_speech_file(
        self,
        path: Path,
        *,
        dry_run: bool,
        kind: str = KIND_SPEECH,
        tags: Sequence[str] = SPEECH_TAGS,
    ) -> Optional[ImportOutcome]:
        """Import one text file as the single version of a speech-like song.

        Audio, binary and empty files are skipped and produce no outcome.
        """

        if is_audio_file(path.name):
            return None
        text = await read_text_file(path)
        content = text.strip() if text else ""
        if not content:
            return None

        title = normalize_title(path.stem)
        payload = _Payload(
            path=path,
            label=normalize_title(path.name),
            source_label=path.name,
            is_text=True,
            data=content.encode("utf-8"),
            content=content,
        )
        return await self._import_payload(kind, title, tags, payload, dry_run=dry_run)

    async def import_activities(
        self,
        activities_file: Path,
        speeches_dirs: Sequence[Path],
        *,
        dry_run: bool,
        on_result: Optional[ResultCallback] = None,
    ) -> List[ImportOutcome]:
        emit = _safe_callback(on_result)
        results: List[ImportOutcome] = []
        for name in await read_activity_names(activities_file):
            path = await self.find_activity_file(name, speeches_dirs)
            if path is None:
                LOGGER.warning("Activity %r not found in speeches directories", name)
                continue
            outcome = await self.import_speech_file(path, dry_run=dry_run, kind=KIND_ACTIVITY, tags=ACTIVITY_TAGS)
            if outcome is not None:
                results.append(outcome)
                emit(outcome)
        return results

    async def find_activity_file(self, name: str, speeches_dirs: Sequence[Path]) -> Optional[Path]:
        bases = list(dict.fromkeys([name, name.replace(" ", "_")]))
        for speeches_dir in speeches_dirs:
            for base in bases:
                for ext in ACTIVITY_EXTENSIONS:
                    candidate = Path(speeches_dir) / f"{base}{ext}"
                    if await aiofiles.os.path.isfile(candidate):
                        return candidate
        prefixes = [base.lower() for base in bases]
        for speeches_dir in speeches_dirs:
            files, _ = await list_directory(Path(speeches_dir))
            for path in files:
                lowered = path.name.lower()
                if any(lowered.startswith(prefix) for prefix in prefixes):
                    return path
        return None

    # Song directories

    async def import_song_directory(
        self,
        song_dir: Path,
        tags: Sequence[str],
        *,
        dry_run: bool,
        on_result: Optional[ResultCallback] = None,
    ) -> List[ImportOutcome]:
        """Import every file of one song directory as versions of that song.

        Files are applied in sorted listing order, which is taken to be the
        order their versions were written in.
        """

        emit = _safe_callback(on_result)
        title = normalize_title(song_dir.name)
        results: List[ImportOutcome] = []
        for file in await collect_files(song_dir):
            label, source_label = derive_labels(file.relative_path)
            payload = _Payload(
                path=file.full_path,
                label=label,
                source_label=source_label,
                is_text=file.is_text,
                data=file.data,
                content=file.text if file.is_text else None,
            )
            outcome = await self._import_payload(KIND_SONG, title, tags, payload, dry_run=dry_run)
            results.append(outcome)
            emit(outcome)
        return results

    async def _import_payload(
        self,
        kind: str,
        title: str,
        tags: Sequence[str],
        payload: _Payload,
        *,
        dry_run: bool,
    ) -> ImportOutcome:
        try:
            song = None if dry_run else await self.store.ensure_song(title, tags, self.created_by)
            created_at = await self.timestamps.created_at(payload.path)
            match = await self.store.find_existing_version(
                title,
                [payload.label, payload.source_label],
                created_at,
            )
            change = classify_change(match, payload.content, payload.is_text)
            status = plan_file_status(change, payload.is_text, dry_run)
            if song is None or not change.needs_write:
                existing_url = version_url(match.existing.id) if match else None
                return ImportOutcome(kind=kind, title=title, label=payload.label, status=status, url=existing_url)
            version = await self._apply_payload(song, payload, created_at)
            return ImportOutcome(kind=kind, title=title, label=payload.label, status=status, url=version_url(version.id))
        except Exception as exc:
            LOGGER.exception("Failed to import %s", payload.path)
            return ImportOutcome(kind=kind, title=title, label=payload.label, status=STATUS_FAILED, error=str(exc))

    async def _apply_payload(self, song: SongRecord, payload: _Payload, created_at: datetime) -> VersionRecord:
        if payload.is_text:
            return await self.lineage.append_version(
                song.id,
                payload.label,
                content=payload.content,
                created_by=self.created_by,
                created_at=created_at,
            )
        if self.blob_store is None:
            raise ContentImportError("Blob storage is not configured")
        blob_url = await self.blob_store.upload(
            payload.data,
            song_id=song.id,
            song_title=song.title,
            file_name=payload.source_label,
        )
        return await self.lineage.append_version(
            song.id,
            payload.label,
            blob_url=blob_url,
            created_by=self.created_by,
            created_at=created_at,
        )

    # Programs

    async def import_program(self, source: ProgramSource, *, dry_run: bool) -> ImportOutcome:
        """Create the program described by a playlist file unless one already exists.

        Existing programs are left to the resync pass.
        """

        try:
            existing = await self.store.find_program_by_title(source.title)
            if existing is not None:
                return ImportOutcome(
                    kind=KIND_PROGRAM,
                    title=source.title,
                    status=STATUS_EXISTS,
                    url=program_url(existing.id),
                )
            resolution = await self.resolver.resolve(source.parsed.items, dry_run=dry_run, reuse_subprograms=False)
            url = None
            if dry_run:
                status = STATUS_WOULD_CREATE
            else:
                program = await self.store.create_program(source.title, self.created_by)
                await self.store.replace_program_refs(
                    program.id,
                    concrete_ids(resolution.element_refs),
                    concrete_ids(resolution.program_refs),
                )
                status = STATUS_CREATED
                url = program_url(program.id)
            return ImportOutcome(
                kind=KIND_PROGRAM,
                title=source.title,
                status=status,
                url=url,
                element_count=resolution.reference_count,
                missing_elements=resolution.missing_elements or None,
                created_placeholders=resolution.created_placeholders or None,
            )
        except Exception as exc:
            LOGGER.exception("Failed to import program %s", source.path)
            return ImportOutcome(kind=KIND_PROGRAM, title=source.title, status=STATUS_FAILED, error=str(exc))


async def read_activity_names(activities_file: Path) -> List[str]:
    """Read the activities allow-list; ``#`` lines are section headers and ignored."""

    text = await read_text_file(activities_file)
    if text is None:
        return []
    names: List[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        names.append(line)
    return names
