"""Resolution of parsed playlists into program graphs, and program resync."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set, Union

from content_scanner import is_program_file, list_directory, read_file_bytes
from content_store import (
    DEFAULT_IMPORT_USER,
    KIND_RESYNC,
    STATUS_FAILED,
    STATUS_RESYNCED,
    STATUS_WOULD_RESYNC,
    ContentImportError,
    ContentStore,
    ImportOutcome,
    LineageBuilder,
    ProgramRecord,
    VersionRecord,
    program_url,
)
from program_parser import SECTION, ParsedItem, ParsedProgram, derive_program_title, parse_program


LOGGER = logging.getLogger(__name__)

PLACEHOLDER_LABEL = "placeholder"
PLACEHOLDER_TAGS = ("placeholder",)


@dataclass(frozen=True)
class Concrete:
    id: str


@dataclass(frozen=True)
class Simulated:
    """Stands in for a program a dry run would have created."""

    name: str


Reference = Union[Concrete, Simulated]


def concrete_ids(refs: Iterable[Reference]) -> List[str]:
    ids: List[str] = []
    for ref in refs:
        if not isinstance(ref, Concrete):
            raise ContentImportError(f"Cannot persist simulated reference {ref!r}")
        ids.append(ref.id)
    return ids


@dataclass
class Resolution:
    element_refs: List[Reference] = field(default_factory=list)
    program_refs: List[Reference] = field(default_factory=list)
    missing_elements: List[str] = field(default_factory=list)
    created_placeholders: List[str] = field(default_factory=list)
    updated_sections: List[str] = field(default_factory=list)

    @property
    def reference_count(self) -> int:
        return len(self.element_refs) + len(self.program_refs)


@dataclass
class ResyncDiff:
    program: ProgramRecord
    resolution: Resolution
    added_elements: int


def plan_resync(program: ProgramRecord, resolution: Resolution) -> Optional[ResyncDiff]:
    """Return the change a resync would make, or ``None`` when there is nothing to do."""

    added = resolution.reference_count - program.reference_count
    if added == 0 and not resolution.created_placeholders and not resolution.updated_sections:
        return None
    return ResyncDiff(program=program, resolution=resolution, added_elements=added)


@dataclass
class _SubprogramReuse:
    enabled: bool
    parent: Optional[ProgramRecord] = None
    claimed: Set[str] = field(default_factory=set)


@dataclass
class ProgramSource:
    path: Path
    title: str
    parsed: ParsedProgram


async def read_program_sources(program_dirs: Sequence[Path]) -> List[ProgramSource]:
    """Load every non-empty playlist file in ``program_dirs``, in listing order."""

    sources: List[ProgramSource] = []
    for program_dir in program_dirs:
        files, _ = await list_directory(Path(program_dir))
        for path in files:
            if not is_program_file(path.name):
                continue
            source = await load_program_source(path)
            if source is not None:
                sources.append(source)
    return sources


async def load_program_source(path: Path) -> Optional[ProgramSource]:
    data = await read_file_bytes(path)
    if data is None:
        return None
    text = data.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    parsed = parse_program(text)
    if parsed.is_empty:
        LOGGER.debug("Playlist %s has no entries; skipping", path)
        return None
    return ProgramSource(path=path, title=derive_program_title(path.name, parsed.title), parsed=parsed)


async def flatten_program(store: ContentStore, program_id: str, visited: Set[str]) -> List[str]:
    """Return every version id reachable from ``program_id``, depth first.

    ``visited`` is shared across the whole walk; a program already in it is
    not descended into again, which keeps cyclic graphs finite.
    """

    if program_id in visited:
        return []
    visited.add(program_id)
    program = await store.get_program(program_id)
    if program is None:
        return []
    version_ids = list(program.element_ids)
    for child_id in program.program_ids:
        version_ids.extend(await flatten_program(store, child_id, visited))
    return version_ids


class ProgramResolver:
    def __init__(
        self,
        store: ContentStore,
        lineage: LineageBuilder,
        created_by: Optional[str] = DEFAULT_IMPORT_USER,
    ) -> None:
        self.store = store
        self.lineage = lineage
        self.created_by = created_by

    async def resolve(
        self,
        items: Sequence[ParsedItem],
        *,
        dry_run: bool,
        reuse_subprograms: bool,
        parent: Optional[ProgramRecord] = None,
    ) -> Resolution:
        """Turn parsed items into version and subprogram references.

        Items are handled one at a time; two imports racing on the same
        section title would otherwise both create a subprogram for it.

        With ``reuse_subprograms`` and a ``parent``, a section only reuses a
        subprogram the parent already references, so programs sharing a
        section title never write into each other's sections.
        """

        resolution = Resolution()
        section_name: Optional[str] = None
        section_refs: List[Reference] = []
        section_count = 0
        reuse = _SubprogramReuse(reuse_subprograms, parent)

        for item in items:
            if item.kind == SECTION:
                await self._flush_section(section_name, section_refs, resolution, dry_run, reuse)
                section_name = item.name
                section_refs = []
                section_count += 1
                continue
            act = section_count if section_name is not None else None
            ref = await self._resolve_song(item.name, resolution, dry_run=dry_run, act=act)
            if ref is None:
                continue
            if section_name is not None:
                section_refs.append(ref)
            else:
                resolution.element_refs.append(ref)

        await self._flush_section(section_name, section_refs, resolution, dry_run, reuse)
        return resolution

    async def _resolve_song(
        self,
        name: str,
        resolution: Resolution,
        *,
        dry_run: bool,
        act: Optional[int],
    ) -> Optional[Reference]:
        version = await self.store.latest_version_by_title(name)
        if version is None:
            version = await self._ensure_placeholder(name, dry_run=dry_run)
            if version is None:
                resolution.missing_elements.append(name)
                return None
            resolution.created_placeholders.append(name)
        if act is not None and not dry_run:
            await self._tag_act(version.song_id, act)
        return Concrete(version.id)

    async def _tag_act(self, song_id: str, act: int) -> None:
        tag = f"act {act}"
        song = await self.store.get_song(song_id)
        if song is not None and tag not in song.tags:
            await self.store.add_song_tags(song_id, [tag])

    async def _ensure_placeholder(self, name: str, *, dry_run: bool) -> Optional[VersionRecord]:
        if dry_run:
            return None
        try:
            song = await self.store.ensure_song(name, PLACEHOLDER_TAGS, self.created_by)
            existing = await self.store.latest_version(song.id)
            if existing is not None:
                return existing
            return await self.lineage.append_version(
                song.id,
                PLACEHOLDER_LABEL,
                content="",
                created_by=self.created_by,
            )
        except Exception:
            LOGGER.exception("Failed to create placeholder for %r", name)
            return None

    async def _flush_section(
        self,
        name: Optional[str],
        refs: List[Reference],
        resolution: Resolution,
        dry_run: bool,
        reuse: _SubprogramReuse,
    ) -> None:
        if name is None or not refs:
            return
        element_ids = concrete_ids(refs)
        if reuse.enabled:
            existing = await self._find_reusable_subprogram(name, reuse)
            if existing is not None:
                reuse.claimed.add(existing.id)
                if existing.element_ids != element_ids:
                    resolution.updated_sections.append(name)
                    if not dry_run:
                        await self.store.replace_program_refs(existing.id, element_ids, existing.program_ids)
                resolution.program_refs.append(Concrete(existing.id))
                return
        if dry_run:
            resolution.program_refs.append(Simulated(name))
            return
        subprogram = await self.store.create_program(name, self.created_by, is_subprogram=True)
        await self.store.replace_program_refs(subprogram.id, element_ids, [])
        reuse.claimed.add(subprogram.id)
        resolution.program_refs.append(Concrete(subprogram.id))

    async def _find_reusable_subprogram(self, name: str, reuse: _SubprogramReuse) -> Optional[ProgramRecord]:
        if reuse.parent is None:
            existing = await self.store.find_subprogram_by_title(name)
            if existing is None or existing.id in reuse.claimed:
                return None
            return existing
        candidates = [
            program_id
            for program_id in reuse.parent.program_ids
            if program_id not in reuse.claimed and program_id != reuse.parent.id
        ]
        if not candidates:
            return None
        return await self.store.find_subprogram_by_title(name, within=candidates)

    async def resync(
        self,
        program_dirs: Sequence[Path],
        *,
        dry_run: bool,
        on_result: Optional[Callable[[ImportOutcome], None]] = None,
    ) -> List[ImportOutcome]:
        """Re-derive existing programs from their playlist files.

        The stored reference lists are replaced wholesale, so manual edits made
        to a program since its last import are lost.
        """

        results: List[ImportOutcome] = []
        for source in await read_program_sources(program_dirs):
            outcome = await self.resync_source(source, dry_run=dry_run)
            if outcome is None:
                continue
            results.append(outcome)
            if on_result is not None:
                on_result(outcome)
        return results

    async def resync_source(self, source: ProgramSource, *, dry_run: bool) -> Optional[ImportOutcome]:
        try:
            program = await self.store.find_program_by_title(source.title)
            if program is None:
                return None
            resolution = await self.resolve(
                source.parsed.items,
                dry_run=dry_run,
                reuse_subprograms=True,
                parent=program,
            )
            diff = plan_resync(program, resolution)
            if diff is None:
                return None
            if dry_run:
                status = STATUS_WOULD_RESYNC
            else:
                await self.store.replace_program_refs(
                    program.id,
                    concrete_ids(resolution.element_refs),
                    concrete_ids(resolution.program_refs),
                )
                status = STATUS_RESYNCED
            return ImportOutcome(
                kind=KIND_RESYNC,
                title=source.title,
                status=status,
                url=program_url(program.id),
                element_count=resolution.reference_count,
                added_elements=diff.added_elements,
                missing_elements=resolution.missing_elements or None,
                created_placeholders=resolution.created_placeholders or None,
            )
        except Exception as exc:
            LOGGER.exception("Failed to resync program %s", source.path)
            return ImportOutcome(kind=KIND_RESYNC, title=source.title, status=STATUS_FAILED, error=str(exc))
