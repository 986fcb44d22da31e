"""Rebuilds a cookbook version tarball from the files on the Chef server.

One ``ArtifactAssembler`` is built per download request. Its pipeline has two
stages joined by bounded queues:

* the fetch stage downloads files one at a time, in manifest order, and
  forwards each buffered body downstream;
* the archive stage appends each body to a gzip'd tar stream and, once the
  fetch stage closes its queue, publishes the finished buffer.

Both stages report through one result future that is resolved exactly once.
A failing stage sets its exception on the future *before* closing the queue
it feeds, so a stage that sees the queue closed checks the future to learn
whether the run already failed.
"""

from __future__ import annotations

import asyncio
import gzip
import io
import logging
import tarfile
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import aiohttp

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

from .errors import ArchiveWriteError, BodegaError, FetchError
from .models import FileDescriptor, Manifest

logger = logging.getLogger(__name__)

# Marks a closed queue.
_CLOSED = None


class JobState(Enum):
    """Lifecycle of a single assembly."""

    CREATED = "created"
    RESOLVING = "resolving"
    PIPELINING = "pipelining"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    JobState.CREATED: {JobState.RESOLVING, JobState.FAILED},
    JobState.RESOLVING: {JobState.PIPELINING, JobState.FAILED},
    JobState.PIPELINING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


@dataclass
class AssemblyJob:
    """State of one download request. Never shared between requests."""

    name: str
    version: str
    manifest: Optional[Manifest] = None
    state: JobState = JobState.CREATED
    error: Optional[BaseException] = field(default=None, repr=False)

    def advance(self, state: JobState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"illegal assembly transition {self.state.value} -> {state.value} "
                f"for {self.name}/{self.version}"
            )
        self.state = state

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.advance(JobState.FAILED)

    @property
    def label(self) -> str:
        return f"{self.name}/{self.version}"


@dataclass
class FetchedFile:
    """A manifest entry with its downloaded body."""

    descriptor: FileDescriptor
    contents: bytes


class ArtifactAssembler:
    """Fetches every file of a resolved job and packs them into a tarball."""

    def __init__(
        self,
        job: AssemblyJob,
        skip_ssl: bool = False,
        fetch_timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        build_time: Optional[int] = None,
        queue_depth: int = Constants.FETCH_QUEUE_DEPTH,
    ):
        """Initialize the assembler.

        Args:
            job: Job in the RESOLVING state with its fresh manifest attached.
            skip_ssl: Disable TLS verification for file downloads.
            fetch_timeout: Optional deadline for each file download, in seconds.
                None waits indefinitely.
            session: HTTP session to use instead of a per-request one. Not closed here.
            build_time: Timestamp stamped on every entry; defaults to now.
            queue_depth: Bound of the pending-file queues.
        """
        self._job = job
        self._skip_ssl = skip_ssl
        self._fetch_timeout = fetch_timeout
        self._session = session
        self._owns_session = session is None
        self._build_time = int(time.time()) if build_time is None else int(build_time)
        self._queue_depth = queue_depth
        self._result: Optional[asyncio.Future] = None

    def _open_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(ssl=not self._skip_ssl)
        return aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self._fetch_timeout),
            headers={"User-Agent": Constants.USER_AGENT},
            auto_decompress=False,
        )

    async def run(self) -> io.BytesIO:
        """Run the pipeline and return a reader over the finished tarball.

        Raises:
            FetchError: If any file could not be downloaded.
            ArchiveWriteError: If the tarball could not be written.
        """
        job = self._job
        if job.manifest is None:
            raise RuntimeError(f"assembly of {job.label} started without a manifest")
        job.advance(JobState.PIPELINING)

        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        fetch_queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_depth)
        archive_queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_depth)

        if self._session is None:
            self._session = self._open_session()
        tasks = [
            loop.create_task(self._enumerate_files(job.manifest, fetch_queue)),
            loop.create_task(self._fetch_stage(fetch_queue, archive_queue)),
            loop.create_task(self._archive_stage(archive_queue)),
        ]
        for task in tasks:
            task.add_done_callback(self._stage_done)
        try:
            with Timer() as t:
                buffer = await self._result
        except BodegaError as exc:
            job.fail(exc)
            logger.error("Assembly of %s failed: %s", job.label, exc)
            raise
        except Exception as exc:
            job.fail(exc)
            logger.exception("Unexpected error while assembling %s", job.label)
            raise
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None

        job.advance(JobState.COMPLETED)
        logger.info(
            "Built tarball for %s (%d files, %d bytes)",
            job.label,
            len(job.manifest),
            buffer.getbuffer().nbytes,
            extra=extra_context(
                event="assembly",
                component="assembler",
                outcome="success",
                duration_ms=t.duration_ms(),
            ),
        )
        buffer.seek(0)
        return buffer

    def _publish(self, buffer: io.BytesIO) -> None:
        assert self._result is not None
        if not self._result.done():
            self._result.set_result(buffer)

    def _record_error(self, error: BodegaError) -> None:
        assert self._result is not None
        if not self._result.done():
            self._result.set_exception(error)

    def _stage_done(self, task: asyncio.Task) -> None:
        """Fail the run if a stage dies with an error it does not handle."""
        if task.cancelled() or self._result is None or self._result.done():
            return
        error = task.exception()
        if error is not None:
            self._result.set_exception(error)

    def _failed(self) -> bool:
        assert self._result is not None
        return self._result.done()

    async def _enumerate_files(self, manifest: Manifest, fetch_queue: asyncio.Queue) -> None:
        """Feed manifest entries to the fetch stage; blocks while the queue is full."""
        for descriptor in manifest.files():
            if self._failed():
                break
            logger.debug("Cookbook file is %s (%s)", descriptor.path, descriptor.category.value)
            await fetch_queue.put(descriptor)
        await fetch_queue.put(_CLOSED)

    async def _fetch_stage(self, fetch_queue: asyncio.Queue, archive_queue: asyncio.Queue) -> None:
        while True:
            descriptor = await fetch_queue.get()
            if descriptor is _CLOSED or self._failed():
                break
            try:
                contents = await self._fetch_file(descriptor)
            except FetchError as exc:
                logger.warning("Failed to fetch %s: %s", descriptor.path, exc.reason)
                # Error first, then close: the archive stage relies on this order.
                self._record_error(exc)
                break
            await archive_queue.put(FetchedFile(descriptor, contents))
        await archive_queue.put(_CLOSED)
        logger.debug("Fetch stage for %s is done", self._job.label)

    async def _fetch_file(self, descriptor: FileDescriptor) -> bytes:
        job = self._job
        if not descriptor.source_url:
            raise FetchError(job.name, job.version, descriptor.path, "no download URL")
        assert self._session is not None
        with Timer() as t:
            try:
                async with self._session.get(descriptor.source_url) as response:
                    if response.status < 200 or response.status >= 300:
                        raise FetchError(
                            job.name, job.version, descriptor.path, f"HTTP {response.status}"
                        )
                    contents = await response.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise FetchError(
                    job.name, job.version, descriptor.path, str(exc) or type(exc).__name__
                ) from exc
        if is_debug_enabled(logger):
            logger.debug(
                "Fetched cookbook file",
                extra=extra_context(
                    event="http_response",
                    component="assembler",
                    action="GET",
                    outcome="success",
                    duration_ms=t.duration_ms(),
                    target=safe_url(descriptor.source_url),
                ),
            )
        return contents

    async def _archive_stage(self, archive_queue: asyncio.Queue) -> None:
        job = self._job
        buffer = io.BytesIO()
        try:
            with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=self._build_time) as compressor:
                with tarfile.open(fileobj=compressor, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                    while True:
                        fetched = await archive_queue.get()
                        if fetched is _CLOSED:
                            break
                        tar.addfile(self._entry_info(fetched), io.BytesIO(fetched.contents))
                    if self._failed():
                        logger.debug("Archive stage for %s drained after failure", job.label)
                        return
        except (OSError, tarfile.TarError, ValueError) as exc:
            self._record_error(ArchiveWriteError(job.name, job.version, str(exc)))
            return
        self._publish(buffer)

    def _entry_info(self, fetched: FetchedFile) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name=f"{self._job.name}/{fetched.descriptor.path}")
        info.size = len(fetched.contents)
        info.mode = Constants.ARCHIVE_FILE_MODE
        info.mtime = self._build_time
        info.type = tarfile.REGTYPE
        return info
