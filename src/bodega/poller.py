"""Periodic catalog refresh against the Chef server."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from common.logging_utils import extra_context, Timer

from .catalog import Catalog, CatalogSnapshot
from .errors import BodegaError, PollerStateError, UpstreamError, UpstreamUnavailableError
from .models import VersionRecord
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


class CatalogPoller:
    """Keeps the catalog in step with the Chef server.

    At most one refresh runs at a time. Refresh requests arriving while one is
    in flight wait for it and are then served together by a single follow-up
    refresh.
    """

    def __init__(self, upstream: UpstreamClient, catalog: Catalog, base_url: str):
        """Initialize the poller.

        Args:
            upstream: Client used to list cookbooks and fetch version details.
            catalog: Catalog whose snapshot is replaced on every refresh.
            base_url: Public base URL used to build universe download locations.
        """
        self._upstream = upstream
        self._catalog = catalog
        self._base_url = base_url.rstrip("/")
        self._refresh_lock = asyncio.Lock()
        self._requested = 0
        self._completed = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped = False
        self._last_refresh: Optional[float] = None

    def snapshot(self) -> CatalogSnapshot:
        """Return the current catalog snapshot."""
        return self._catalog.snapshot()

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_refresh(self) -> Optional[float]:
        """Creation time of the last snapshot this poller installed."""
        return self._last_refresh

    async def refresh(self) -> Optional[int]:
        """Rebuild the catalog from the Chef server.

        Returns:
            Number of versions in the installed snapshot, or None if the cycle
            was aborted or already covered by a refresh that started later.
        """
        self._requested += 1
        ticket = self._requested
        async with self._refresh_lock:
            if self._completed >= ticket:
                logger.debug("Refresh request already covered by a completed cycle")
                return None
            covers = self._requested
            try:
                return await self._refresh_cycle()
            finally:
                self._completed = covers

    async def _refresh_cycle(self) -> Optional[int]:
        previous = self._catalog.snapshot()
        with Timer() as t:
            try:
                listing = await self._upstream.list_all_versions()
            except BodegaError as exc:
                logger.error("Error fetching cookbooks: %s", exc)
                return None

            packages: Dict[str, Dict[str, VersionRecord]] = {}
            for name, versions in listing.items():
                records: Dict[str, VersionRecord] = {}
                for version in versions:
                    record = previous.get(name, version)
                    if record is not None:
                        logger.debug("Skipping known cookbook version %s/%s", name, version)
                    else:
                        try:
                            record = await self._fetch_record(name, version)
                        except UpstreamUnavailableError as exc:
                            logger.error(
                                "Chef server unavailable during refresh, keeping previous catalog: %s",
                                exc,
                            )
                            return None
                    if record is not None:
                        records[version] = record
                if records:
                    packages[name] = records

            snapshot = CatalogSnapshot(packages)
            self._catalog.replace(snapshot)
            self._last_refresh = snapshot.created_at

        logger.info(
            "Cookbook cache run complete: %d cookbooks, %d versions",
            snapshot.package_count,
            snapshot.version_count,
            extra=extra_context(
                event="catalog_refresh",
                component="poller",
                outcome="success",
                duration_ms=t.duration_ms(),
            ),
        )
        return snapshot.version_count

    async def _fetch_record(self, name: str, version: str) -> Optional[VersionRecord]:
        """Fetch one new version; None means skip it this cycle."""
        try:
            detail = await self._upstream.get_version_detail(name, version)
        except UpstreamUnavailableError:
            raise
        except UpstreamError as exc:
            logger.warning("Error fetching cookbook version %s/%s: %s", name, version, exc)
            return None
        if detail is None:
            logger.warning("Couldn't find cookbook version: %s/%s", name, version)
            return None
        logger.debug("Cached %s/%s (%d files)", name, version, len(detail.manifest))
        return VersionRecord.build(self._base_url, name, version, detail)

    def start_polling(self, interval: float) -> asyncio.Task:
        """Refresh now, then every ``interval`` seconds until stopped.

        Must be called from a running event loop.

        Raises:
            PollerStateError: If polling was already started.
            ValueError: If ``interval`` is not positive.
        """
        if self._task is not None or self._stopped:
            raise PollerStateError("already polling for cookbooks")
        if interval <= 0:
            raise ValueError(f"poll interval must be positive, got {interval}")
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._poll_loop(interval))
        return self._task

    def stop_polling(self) -> None:
        """Ask the polling loop to exit after its current wait.

        Raises:
            PollerStateError: If polling is not running or was already stopped.
        """
        if self._task is None or self._stopped or self._stop_event is None:
            raise PollerStateError("not polling for cookbooks")
        self._stopped = True
        self._stop_event.set()

    async def wait_closed(self) -> None:
        """Wait for the polling task to finish."""
        if self._task is not None:
            await self._task

    async def _poll_loop(self, interval: float) -> None:
        assert self._stop_event is not None
        logger.info("Polling Chef server every %s seconds", interval)
        while not self._stop_event.is_set():
            await self._poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                logger.debug("Poll interval elapsed")
        logger.info("Stopped polling for cookbooks")

    async def _poll_once(self) -> None:
        try:
            await self.refresh()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Unexpected error while refreshing the cookbook catalog")
