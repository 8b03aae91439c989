"""Settings for the importer: an optional config module plus environment overrides."""
from __future__ import annotations

import importlib
import importlib.util
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, List, Mapping, Optional

from content_importer import ImportSources, SongsDirConfig
from content_scanner import GitTimestamps, MtimeTimestamps, TimestampStrategy
from content_store import DEFAULT_IMPORT_USER


TIMESTAMP_SOURCES = ("mtime", "git")

DEFAULT_SONG_TAGS = ["song"]


def _load_config_module(environ: Optional[Mapping[str, str]] = None) -> Optional[ModuleType]:
    """Load configuration module from several possible locations.

    Returns ``None`` when no config module exists; every setting can also come
    from the environment.
    """

    environ = os.environ if environ is None else environ
    module_name = environ.get("SONGBOOK_IMPORT_CONFIG_MODULE")
    search_order = []
    if module_name:
        search_order.append(module_name)
    search_order.extend(["config.import_config", "config"])

    for name in search_order:
        try:
            return importlib.import_module(name)
        except ModuleNotFoundError:
            continue

    path_candidates = [
        Path(environ.get("SONGBOOK_IMPORT_CONFIG_PATH", "config.py")),
        Path("config/import_config.py"),
    ]
    for config_path in path_candidates:
        if not config_path.exists():
            continue
        spec = importlib.util.spec_from_file_location("config", config_path)
        if spec and spec.loader:
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)  # type: ignore[attr-defined]
            return module
    return None


def take_config(config: Optional[ModuleType], name: str, required: bool = False) -> Any:
    if config is not None and hasattr(config, name):
        return getattr(config, name)
    if required:
        raise ValueError('Required option is not defined in the config module: {}'.format(name))
    return None


def _coerce_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return default
    return text not in {'0', 'false', 'no', 'off'}


def _split_paths(value: Optional[str]) -> List[Path]:
    if not value:
        return []
    return [Path(part).expanduser() for part in value.split(os.pathsep) if part.strip()]


def _as_paths(value: Any) -> List[Path]:
    if not value:
        return []
    if isinstance(value, (str, Path)):
        value = [value]
    return [Path(item).expanduser() for item in value]


def _songs_dirs(value: Any) -> List[SongsDirConfig]:
    """Accept plain paths or ``{"path": ..., "tags": [...]}`` entries."""

    if not value:
        return []
    if isinstance(value, (str, Path, dict)):
        value = [value]
    songs_dirs = []
    for entry in value:
        if isinstance(entry, dict):
            tags = list(entry.get("tags") or DEFAULT_SONG_TAGS)
            songs_dirs.append(SongsDirConfig(path=Path(entry["path"]).expanduser(), tags=tags))
        else:
            songs_dirs.append(SongsDirConfig(path=Path(entry).expanduser(), tags=list(DEFAULT_SONG_TAGS)))
    return songs_dirs


@dataclass
class ImportSettings:
    mongo_uri: Optional[str] = None
    mongo_host: List[str] = field(default_factory=lambda: ["127.0.0.1:27017"])
    mongo_db: str = "songbook"
    blob_base_url: Optional[str] = None
    blob_token: Optional[str] = None
    lilypond_server_url: Optional[str] = None
    timestamp_source: str = "mtime"
    import_user: str = DEFAULT_IMPORT_USER
    background_workers: int = 2
    render_on_import: bool = True
    sources: ImportSources = field(default_factory=ImportSources)

    def timestamp_strategy(self) -> TimestampStrategy:
        if self.timestamp_source == "git":
            return GitTimestamps()
        return MtimeTimestamps()


def load_settings(
    config: Optional[ModuleType] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ImportSettings:
    """Build settings from ``config`` (loaded when not given) and ``environ``."""

    environ = os.environ if environ is None else environ
    if config is None:
        config = _load_config_module(environ)

    mongo_config = take_config(config, 'MONGO') or {}
    mongo_host = environ.get("SONGBOOK_MONGO_HOST") or mongo_config.get('host') or ['127.0.0.1:27017']
    if isinstance(mongo_host, str):
        mongo_host = [mongo_host]

    timestamp_source = (
        environ.get("SONGBOOK_TIMESTAMP_SOURCE") or take_config(config, 'TIMESTAMP_SOURCE') or "mtime"
    ).strip().lower()
    if timestamp_source not in TIMESTAMP_SOURCES:
        raise ValueError('Unknown timestamp source: {} (expected one of {})'.format(
            timestamp_source, ", ".join(TIMESTAMP_SOURCES)))

    workers = environ.get("SONGBOOK_BACKGROUND_WORKERS") or take_config(config, 'BACKGROUND_WORKERS') or 2

    sources = ImportSources(
        songs_dirs=(
            _songs_dirs([str(path) for path in _split_paths(environ.get("SONGBOOK_SONGS_DIRS"))])
            or _songs_dirs(take_config(config, 'SONGS_DIRS'))
        ),
        speeches_dirs=_split_paths(environ.get("SONGBOOK_SPEECHES_DIRS")) or _as_paths(take_config(config, 'SPEECHES_DIRS')),
        programs_dirs=_split_paths(environ.get("SONGBOOK_PROGRAMS_DIRS")) or _as_paths(take_config(config, 'PROGRAMS_DIRS')),
    )
    activities_file = environ.get("SONGBOOK_ACTIVITIES_FILE") or take_config(config, 'ACTIVITIES_FILE')
    if activities_file:
        sources.activities_file = Path(activities_file).expanduser()

    return ImportSettings(
        mongo_uri=environ.get("SONGBOOK_MONGO_URI") or mongo_config.get('uri'),
        mongo_host=list(mongo_host),
        mongo_db=environ.get("SONGBOOK_MONGO_DB") or mongo_config.get('database') or 'songbook',
        blob_base_url=environ.get("SONGBOOK_BLOB_BASEURL") or take_config(config, 'BLOB_BASEURL'),
        blob_token=environ.get("SONGBOOK_BLOB_TOKEN") or take_config(config, 'BLOB_TOKEN'),
        lilypond_server_url=environ.get("LILYPOND_SERVER_URL") or take_config(config, 'LILYPOND_SERVER_URL'),
        timestamp_source=timestamp_source,
        import_user=environ.get("SONGBOOK_IMPORT_USER") or take_config(config, 'IMPORT_USER') or DEFAULT_IMPORT_USER,
        background_workers=max(1, int(workers)),
        render_on_import=_coerce_bool(
            environ.get("SONGBOOK_RENDER_ON_IMPORT"),
            _coerce_bool(take_config(config, 'RENDER_ON_IMPORT'), True),
        ),
        sources=sources,
    )
