#!/usr/bin/env python3
"""Command line entry point: import content directories into the songbook database."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pymongo import AsyncMongoClient

from background_tasks import BackgroundTaskQueue, LilypondRenderer
from blob_store import HttpBlobStore
from content_importer import ContentImporter, SongsDirConfig
from content_store import STATUS_FAILED, ContentStore, LineageBuilder, ImportOutcome, version_url
from import_config import ImportSettings, load_settings
from program_resolver import ProgramResolver, flatten_program


LOGGER = logging.getLogger("songbook_import")


def build_client(settings: ImportSettings) -> AsyncMongoClient:
    if settings.mongo_uri:
        return AsyncMongoClient(settings.mongo_uri)
    return AsyncMongoClient(host=settings.mongo_host)


class ImportApp:
    """Wires the store, lineage builder, resolver and importer for one run."""

    def __init__(self, settings: ImportSettings, db) -> None:
        self.settings = settings
        self.store = ContentStore(db)
        self.tasks = BackgroundTaskQueue(workers=settings.background_workers)
        self.renderer = LilypondRenderer(self.store, settings.lilypond_server_url)
        post_process = self.renderer.process_version if settings.render_on_import else None
        self.lineage = LineageBuilder(self.store, self.tasks, post_process)
        self.resolver = ProgramResolver(self.store, self.lineage, settings.import_user)
        self.importer = ContentImporter(
            self.store,
            self.lineage,
            self.resolver,
            blob_store=HttpBlobStore(settings.blob_base_url, settings.blob_token),
            timestamps=settings.timestamp_strategy(),
            created_by=settings.import_user,
        )

    async def close(self) -> None:
        await self.tasks.close()
        for failure in self.tasks.failures:
            LOGGER.warning("Background task %s gave up: %s", failure.name, failure.error)


def _print_outcome(outcome: ImportOutcome) -> None:
    print(json.dumps(outcome.to_dict(), ensure_ascii=False), flush=True)


async def _command_run(app: ImportApp, args) -> int:
    summary = await app.importer.import_from_directories(
        app.settings.sources,
        dry_run=args.dry_run,
        on_result=_print_outcome,
    )
    await app.close()
    print(json.dumps({
        "summary": summary.counts(),
        "dryRun": args.dry_run,
        "backgroundFailures": len(app.tasks.failures),
    }), flush=True)
    failed = [result for result in summary.all_results() if result.status == STATUS_FAILED]
    return 1 if failed else 0


async def _command_resync(app: ImportApp, args) -> int:
    results = await app.resolver.resync(
        app.settings.sources.programs_dirs,
        dry_run=args.dry_run,
        on_result=_print_outcome,
    )
    await app.close()
    print(json.dumps({"resynced": len(results), "dryRun": args.dry_run}), flush=True)
    return 1 if any(result.status == STATUS_FAILED for result in results) else 0


async def _command_flatten(app: ImportApp, args) -> int:
    program = await app.store.find_program_by_title(args.title)
    if program is None:
        LOGGER.error("No program titled %r", args.title)
        return 1
    for version_id in await flatten_program(app.store, program.id, set()):
        version = await app.store.get_version(version_id)
        print(json.dumps({
            "id": version_id,
            "label": version.label if version else None,
            "url": version_url(version_id),
        }, ensure_ascii=False), flush=True)
    return 0


COMMANDS = {
    "run": _command_run,
    "resync": _command_resync,
    "flatten": _command_flatten,
}


def _apply_overrides(settings: ImportSettings, args) -> None:
    sources = settings.sources
    if args.songs_dir:
        sources.songs_dirs = [SongsDirConfig(path=Path(path)) for path in args.songs_dir]
    if args.speeches_dir:
        sources.speeches_dirs = [Path(path) for path in args.speeches_dir]
    if args.programs_dir:
        sources.programs_dirs = [Path(path) for path in args.programs_dir]
    if args.activities_file:
        sources.activities_file = Path(args.activities_file)
    if args.git_timestamps:
        settings.timestamp_source = "git"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Import songs, speeches and programs into the songbook database.')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging.')
    parser.add_argument('-n', '--dry-run', action='store_true', help='Report what would change without writing.')
    parser.add_argument('--songs-dir', action='append', metavar='DIR', help='Song directory root (repeatable).')
    parser.add_argument('--speeches-dir', action='append', metavar='DIR', help='Speeches directory (repeatable).')
    parser.add_argument('--programs-dir', action='append', metavar='DIR', help='Playlist directory (repeatable).')
    parser.add_argument('--activities-file', metavar='FILE', help='Activities allow-list.')
    parser.add_argument('--git-timestamps', action='store_true', help='Use git commit times as version timestamps.')
    subparsers = parser.add_subparsers(dest='command')
    subparsers.add_parser('run', help='Run every import stage (default).')
    subparsers.add_parser('resync', help='Re-derive existing programs from their playlist files.')
    flatten = subparsers.add_parser('flatten', help='List every version reachable from a program.')
    flatten.add_argument('title', metavar='TITLE', help='Program title.')
    return parser


async def _main(args) -> int:
    settings = load_settings()
    _apply_overrides(settings, args)
    client = build_client(settings)
    try:
        app = ImportApp(settings, client[settings.mongo_db])
        await app.store.ensure_indexes()
        return await COMMANDS[args.command or 'run'](app, args)
    finally:
        await client.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )
    return asyncio.run(_main(args))


if __name__ == '__main__':
    sys.exit(main())
