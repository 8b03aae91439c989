"""Background job queue and best-effort post-processing of new versions."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from content_store import ContentImportError, ContentStore, VersionRecord


LOGGER = logging.getLogger(__name__)

LILYPOND_SUFFIXES = (".ly", ".lilypond")

Job = Callable[[], Awaitable[None]]


class RenderError(ContentImportError):
    pass


@dataclass
class TaskFailure:
    name: str
    error: str
    attempts: int


class BackgroundTaskQueue:
    """Runs submitted coroutine jobs on a few worker tasks.

    Jobs are retried up to ``max_attempts`` times; the last error of a job
    that never succeeds lands in :attr:`failures` and the log, and is not
    raised anywhere else. Submitting never blocks and never awaits the job.
    """

    def __init__(self, workers: int = 2, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self.worker_count = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.failures: List[TaskFailure] = []
        self.completed = 0
        self._queue: Optional[asyncio.Queue[Tuple[str, Job]]] = None
        self._workers: List[asyncio.Task] = []

    def submit(self, name: str, job: Job) -> None:
        self._ensure_workers()
        assert self._queue is not None
        self._queue.put_nowait((name, job))

    def _ensure_workers(self) -> None:
        if self._workers:
            return
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._workers = [loop.create_task(self._worker()) for _ in range(self.worker_count)]

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            name, job = await self._queue.get()
            try:
                await self._run(name, job)
            finally:
                self._queue.task_done()

    async def _run(self, name: str, job: Job) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await job()
            except Exception as exc:
                if attempt >= self.max_attempts:
                    LOGGER.error("Background task %s failed after %d attempts: %s", name, attempt, exc)
                    self.failures.append(TaskFailure(name=name, error=str(exc), attempts=attempt))
                    return
                LOGGER.warning("Background task %s failed (attempt %d): %s", name, attempt, exc)
                await asyncio.sleep(self.retry_delay * attempt)
            else:
                self.completed += 1
                return

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Wait for queued jobs, then stop the workers."""

        await self.join()
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._queue = None


def _blob_filename(blob_url: str) -> str:
    path = urlparse(blob_url).path or blob_url
    return path.rstrip("/").rsplit("/", 1)[-1]


def is_lilypond_name(name: str) -> bool:
    return name.lower().endswith(LILYPOND_SUFFIXES)


class LilypondRenderer:
    """Renders LilyPond versions to SVG pages through an external conversion server."""

    def __init__(self, store: ContentStore, server_url: Optional[str], timeout: float = 120.0) -> None:
        self.store = store
        self.server_url = (server_url or "").rstrip("/")
        self.timeout = timeout

    async def process_version(self, version_id: str) -> None:
        if not self.server_url:
            LOGGER.debug("No LilyPond server configured; skipping version %s", version_id)
            return
        version = await self.store.get_version(version_id)
        if version is None:
            LOGGER.warning("Version %s not found for rendering", version_id)
            return
        if version.rendered_content.get("lilypond"):
            return
        source = await self._lilypond_source(version)
        if not source:
            return

        LOGGER.info("Rendering LilyPond for version %s (%d chars)", version_id, len(source))
        svgs = await asyncio.to_thread(self._convert, source)
        if not svgs:
            LOGGER.warning("No SVG pages generated for version %s", version_id)
            return
        rendered = dict(version.rendered_content)
        rendered["lilypond"] = json.dumps(svgs)
        await self.store.update_rendered_content(version_id, rendered)
        LOGGER.info("Saved rendered LilyPond for version %s (%d pages)", version_id, len(svgs))

    async def _lilypond_source(self, version: VersionRecord) -> Optional[str]:
        if version.content and is_lilypond_name(version.label):
            return version.content
        if version.blob_url and is_lilypond_name(_blob_filename(version.blob_url)):
            return await asyncio.to_thread(self._fetch_blob, version.blob_url)
        return None

    def _fetch_blob(self, blob_url: str) -> str:
        resp = requests.get(blob_url, timeout=self.timeout)
        if resp.status_code != 200:
            raise RenderError(f"Failed to fetch blob {blob_url} (status code {resp.status_code})")
        return resp.text

    def _convert(self, content: str) -> List[str]:
        resp = requests.post(
            f"{self.server_url}/convert",
            json={"content": content},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise RenderError(
                "LilyPond conversion failed: {} {}".format(resp.status_code, resp.text[:200])
            )
        payload = resp.json()
        return list(payload.get("svgs") or [])
