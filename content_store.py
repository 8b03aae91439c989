"""MongoDB-backed store for songs, version lineages and programs."""
from __future__ import annotations

import enum
import functools
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from content_scanner import timestamps_match, title_key, to_utc_millis


LOGGER = logging.getLogger(__name__)

DEFAULT_IMPORT_USER = "secularsolstice-import"

_NEWEST_FIRST = [("db_created_at", -1), ("_id", -1)]


class ContentImportError(Exception):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


def version_url(version_id: Optional[str]) -> Optional[str]:
    return f"/songs/{version_id}" if version_id else None


def program_url(program_id: Optional[str]) -> Optional[str]:
    return f"/programs/{program_id}" if program_id else None


@dataclass
class SongRecord:
    id: str
    title: str
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    archived: bool = False

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "SongRecord":
        return cls(
            id=str(doc["id"]),
            title=str(doc.get("title", "")),
            tags=list(doc.get("tags") or []),
            created_by=doc.get("created_by"),
            created_at=doc.get("created_at"),
            archived=bool(doc.get("archived", False)),
        )


@dataclass
class VersionRecord:
    id: str
    song_id: str
    label: str
    content: Optional[str] = None
    blob_url: Optional[str] = None
    previous_version_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    db_created_at: Optional[datetime] = None
    rendered_content: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "VersionRecord":
        return cls(
            id=str(doc["id"]),
            song_id=str(doc["song_id"]),
            label=str(doc.get("label", "")),
            content=doc.get("content"),
            blob_url=doc.get("blob_url"),
            previous_version_id=doc.get("previous_version_id"),
            created_by=doc.get("created_by"),
            created_at=doc.get("created_at"),
            db_created_at=doc.get("db_created_at"),
            rendered_content=dict(doc.get("rendered_content") or {}),
        )


@dataclass
class ProgramRecord:
    id: str
    title: str
    element_ids: List[str] = field(default_factory=list)
    program_ids: List[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    archived: bool = False
    is_subprogram: bool = False

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "ProgramRecord":
        return cls(
            id=str(doc["id"]),
            title=str(doc.get("title", "")),
            element_ids=list(doc.get("element_ids") or []),
            program_ids=list(doc.get("program_ids") or []),
            created_by=doc.get("created_by"),
            created_at=doc.get("created_at"),
            archived=bool(doc.get("archived", False)),
            is_subprogram=bool(doc.get("is_subprogram", False)),
        )

    @property
    def reference_count(self) -> int:
        return len(self.element_ids) + len(self.program_ids)


KIND_SPEECH = "speech"
KIND_SONG = "song"
KIND_ACTIVITY = "activity"
KIND_PROGRAM = "program"
KIND_RESYNC = "resync"

STATUS_EXISTS = "exists"
STATUS_WOULD_CREATE = "would-create"
STATUS_WOULD_CREATE_BINARY = "would-create-binary"
STATUS_WOULD_UPDATE = "would-update"
STATUS_CREATED = "created"
STATUS_CREATED_BINARY = "created-binary"
STATUS_FAILED = "failed"
STATUS_WOULD_RESYNC = "would-resync"
STATUS_RESYNCED = "resynced"

_OUTCOME_WIRE_NAMES = {
    "element_count": "elementCount",
    "missing_elements": "missingElements",
    "created_placeholders": "createdPlaceholders",
    "added_elements": "addedElements",
}


@dataclass
class ImportOutcome:
    kind: str
    title: str
    status: str
    label: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    element_count: Optional[int] = None
    missing_elements: Optional[List[str]] = None
    created_placeholders: Optional[List[str]] = None
    added_elements: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            payload[_OUTCOME_WIRE_NAMES.get(key, key)] = value
        return payload


@dataclass
class ExistingMatch:
    existing: VersionRecord
    exact_timestamp_match: bool


class ChangeKind(enum.Enum):
    NEW = "new"
    UNCHANGED = "unchanged"
    UNCHANGED_CONTENT = "unchanged-content"
    CHANGED = "changed"

    @property
    def needs_write(self) -> bool:
        return self in (ChangeKind.NEW, ChangeKind.CHANGED)


def classify_change(match: Optional[ExistingMatch], content: Optional[str], is_text: bool) -> ChangeKind:
    """Decide what importing a file means relative to its existing version.

    Equal timestamps are trusted as proof the file was already imported. When
    the timestamp drifted but the payload did not, the file is still treated as
    unchanged: text compares literally, binary files count as present when the
    matched version already carries a blob.
    """

    if match is None:
        return ChangeKind.NEW
    if match.exact_timestamp_match:
        return ChangeKind.UNCHANGED
    existing = match.existing
    if is_text:
        if existing.content is not None and existing.content == content:
            return ChangeKind.UNCHANGED_CONTENT
    elif existing.blob_url:
        return ChangeKind.UNCHANGED_CONTENT
    return ChangeKind.CHANGED


class ContentStore:
    """Thin async repository over the ``songs``, ``song_versions`` and ``programs`` collections."""

    def __init__(self, db: AsyncDatabase) -> None:
        self.db = db

    async def ensure_indexes(self) -> None:
        index_specs = [
            (self.db.songs, "id", {"unique": True}),
            (
                self.db.songs,
                "titleNormalized",
                {"unique": True, "partialFilterExpression": {"archived": False}},
            ),
            (self.db.song_versions, "id", {"unique": True}),
            (self.db.song_versions, [("song_id", 1), ("label", 1)], {}),
            (self.db.programs, "id", {"unique": True}),
            (self.db.programs, "title", {}),
        ]
        for collection, keys, options in index_specs:
            try:
                await collection.create_index(keys, **options)
            except PyMongoError:
                LOGGER.debug("Failed to ensure index %s on %s", keys, collection.name)

    # Songs

    async def find_song_by_title(self, title: str, include_archived: bool = False) -> Optional[SongRecord]:
        query: Dict[str, Any] = {"titleNormalized": title_key(title)}
        if not include_archived:
            query["archived"] = False
        doc = await self.db.songs.find_one(query)
        return SongRecord.from_doc(doc) if doc else None

    async def get_song(self, song_id: str) -> Optional[SongRecord]:
        doc = await self.db.songs.find_one({"id": song_id})
        return SongRecord.from_doc(doc) if doc else None

    async def create_song(self, title: str, created_by: Optional[str], tags: Sequence[str]) -> SongRecord:
        document = {
            "id": new_id(),
            "title": title,
            "titleNormalized": title_key(title),
            "tags": list(dict.fromkeys(tags)),
            "created_by": created_by,
            "created_at": to_utc_millis(datetime.now(timezone.utc)),
            "archived": False,
        }
        await self.db.songs.insert_one(document)
        return SongRecord.from_doc(document)

    async def ensure_song(self, title: str, tags: Sequence[str], created_by: Optional[str]) -> SongRecord:
        """Return the song titled ``title``, creating it when missing.

        A unique-index violation means a concurrent import created the song
        first; the existing row is re-read instead of failing.
        """

        existing = await self.find_song_by_title(title)
        if existing is not None:
            missing_tags = [tag for tag in tags if tag not in existing.tags]
            if missing_tags:
                existing = await self.add_song_tags(existing.id, missing_tags) or existing
            return existing
        try:
            return await self.create_song(title, created_by, tags)
        except DuplicateKeyError:
            LOGGER.debug("Song %r was created concurrently; re-reading", title)
            duplicate = await self.find_song_by_title(title, include_archived=True)
            if duplicate is None:
                raise
            return duplicate

    async def add_song_tags(self, song_id: str, tags: Iterable[str]) -> Optional[SongRecord]:
        tags = list(tags)
        if tags:
            await self.db.songs.update_one({"id": song_id}, {"$addToSet": {"tags": {"$each": tags}}})
        return await self.get_song(song_id)

    # Versions

    async def latest_version(self, song_id: str) -> Optional[VersionRecord]:
        doc = await self.db.song_versions.find_one(
            {"song_id": song_id, "archived": False},
            sort=_NEWEST_FIRST,
        )
        return VersionRecord.from_doc(doc) if doc else None

    async def latest_version_id(self, song_id: str) -> Optional[str]:
        latest = await self.latest_version(song_id)
        return latest.id if latest else None

    async def latest_version_by_title(self, title: str) -> Optional[VersionRecord]:
        song = await self.find_song_by_title(title)
        if song is None:
            return None
        return await self.latest_version(song.id)

    async def find_version_by_title_and_label(self, title: str, label: str) -> Optional[VersionRecord]:
        song = await self.find_song_by_title(title)
        if song is None:
            return None
        doc = await self.db.song_versions.find_one(
            {"song_id": song.id, "label": label, "archived": False},
            sort=_NEWEST_FIRST,
        )
        return VersionRecord.from_doc(doc) if doc else None

    async def find_existing_version(
        self,
        song_title: str,
        labels: Sequence[str],
        created_at: datetime,
    ) -> Optional[ExistingMatch]:
        """Check each candidate label, preferring an exact timestamp match."""

        first_existing: Optional[VersionRecord] = None
        for label in dict.fromkeys(labels):
            existing = await self.find_version_by_title_and_label(song_title, label)
            if existing is None:
                continue
            if first_existing is None:
                first_existing = existing
            if timestamps_match(existing.created_at, created_at):
                return ExistingMatch(existing=existing, exact_timestamp_match=True)
        if first_existing is None:
            return None
        return ExistingMatch(existing=first_existing, exact_timestamp_match=False)

    async def insert_version(
        self,
        *,
        song_id: str,
        label: str,
        content: Optional[str],
        blob_url: Optional[str],
        previous_version_id: Optional[str],
        created_by: Optional[str],
        created_at: Optional[datetime],
    ) -> VersionRecord:
        now = to_utc_millis(datetime.now(timezone.utc))
        document = {
            "id": new_id(),
            "song_id": song_id,
            "label": label,
            "content": content,
            "blob_url": blob_url,
            "previous_version_id": previous_version_id,
            "created_by": created_by,
            "created_at": to_utc_millis(created_at) if created_at else now,
            "db_created_at": now,
            "rendered_content": {},
            "archived": False,
        }
        await self.db.song_versions.insert_one(document)
        return VersionRecord.from_doc(document)

    async def get_version(self, version_id: str) -> Optional[VersionRecord]:
        doc = await self.db.song_versions.find_one({"id": version_id, "archived": False})
        return VersionRecord.from_doc(doc) if doc else None

    async def version_chain(self, version_id: str) -> List[VersionRecord]:
        """Follow ``previous_version_id`` pointers from ``version_id`` to the root."""

        chain: List[VersionRecord] = []
        seen = set()
        current_id: Optional[str] = version_id
        while current_id and current_id not in seen:
            seen.add(current_id)
            version = await self.get_version(current_id)
            if version is None:
                break
            chain.append(version)
            current_id = version.previous_version_id
        return chain

    async def update_rendered_content(self, version_id: str, rendered_content: Dict[str, Any]) -> None:
        await self.db.song_versions.update_one(
            {"id": version_id},
            {"$set": {"rendered_content": rendered_content}},
        )

    # Programs

    async def create_program(
        self,
        title: str,
        created_by: Optional[str],
        is_subprogram: bool = False,
    ) -> ProgramRecord:
        document = {
            "id": new_id(),
            "title": title,
            "element_ids": [],
            "program_ids": [],
            "created_by": created_by,
            "created_at": to_utc_millis(datetime.now(timezone.utc)),
            "archived": False,
            "is_subprogram": is_subprogram,
        }
        await self.db.programs.insert_one(document)
        return ProgramRecord.from_doc(document)

    async def find_program_by_title(self, title: str) -> Optional[ProgramRecord]:
        """Return the oldest live top-level program titled ``title``; section subprograms never match."""

        doc = await self.db.programs.find_one(
            {"title": title, "archived": False, "is_subprogram": {"$ne": True}},
            sort=[("_id", 1)],
        )
        return ProgramRecord.from_doc(doc) if doc else None

    async def find_subprogram_by_title(
        self,
        title: str,
        within: Optional[Sequence[str]] = None,
    ) -> Optional[ProgramRecord]:
        """Return a live subprogram titled ``title``, restricted to the ids in ``within`` when given."""

        query: Dict[str, Any] = {"title": title, "archived": False, "is_subprogram": True}
        if within is not None:
            query["id"] = {"$in": list(within)}
        doc = await self.db.programs.find_one(query, sort=[("_id", 1)])
        return ProgramRecord.from_doc(doc) if doc else None

    async def get_program(self, program_id: str) -> Optional[ProgramRecord]:
        doc = await self.db.programs.find_one({"id": program_id, "archived": False})
        return ProgramRecord.from_doc(doc) if doc else None

    async def replace_program_refs(
        self,
        program_id: str,
        element_ids: Sequence[str],
        program_ids: Sequence[str],
    ) -> None:
        result = await self.db.programs.update_one(
            {"id": program_id, "archived": False},
            {"$set": {"element_ids": list(element_ids), "program_ids": list(program_ids)}},
        )
        if getattr(result, "matched_count", 1) == 0:
            raise ContentImportError(f"Program {program_id} not found or archived")


PostProcessor = Callable[[str], Awaitable[None]]


class LineageBuilder:
    """Appends versions onto the tip of a song's lineage.

    After each append a post-processing job for the new version is handed to
    ``tasks`` (a :class:`background_tasks.BackgroundTaskQueue`) and never
    awaited here.
    """

    def __init__(self, store: ContentStore, tasks=None, post_process: Optional[PostProcessor] = None) -> None:
        self.store = store
        self.tasks = tasks
        self.post_process = post_process

    async def append_version(
        self,
        song_id: str,
        label: str,
        *,
        content: Optional[str] = None,
        blob_url: Optional[str] = None,
        created_by: Optional[str] = DEFAULT_IMPORT_USER,
        created_at: Optional[datetime] = None,
    ) -> VersionRecord:
        previous_version_id = await self.store.latest_version_id(song_id)
        version = await self.store.insert_version(
            song_id=song_id,
            label=label,
            content=content,
            blob_url=blob_url,
            previous_version_id=previous_version_id,
            created_by=created_by,
            created_at=created_at,
        )
        self._schedule_post_processing(version)
        return version

    def _schedule_post_processing(self, version: VersionRecord) -> None:
        if self.tasks is None or self.post_process is None:
            return
        try:
            self.tasks.submit(f"post-process {version.id}", functools.partial(self.post_process, version.id))
        except Exception:
            LOGGER.exception("Failed to schedule post-processing for version %s", version.id)
