"""Cookbook proxy server using aiohttp."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import signal
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from aiohttp import web

from constants import Constants, VERSION

from .assembler import ArtifactAssembler, AssemblyJob, JobState
from .catalog import Catalog
from .errors import BodegaError, StartupConfigurationError, VersionNotFoundError
from .poller import CatalogPoller
from .signing import RequestSigner, load_private_key
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

LANDING_PAGE = """<html>
<head><title>Chef Bodega</title></head>
<body>
<h1>Chef Bodega</h1>
<p>Berkshelf universe: <a href="/universe">/universe</a></p>
</body>
</html>
"""


@dataclass
class BodegaConfig:
    """Configuration for the proxy server."""

    host: str = Constants.DEFAULT_HOST
    port: int = Constants.DEFAULT_PORT
    chef_server: str = ""
    chef_client: str = ""
    chef_pem: str = ""
    base_url: str = Constants.DEFAULT_BASE_URL
    poll_interval: float = Constants.DEFAULT_POLL_INTERVAL
    skip_ssl: bool = False
    timeout: int = Constants.REQUEST_TIMEOUT
    fetch_timeout: Optional[float] = None
    allow_external: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BodegaConfig":
        """Create config from a settings mapping (e.g. a YAML file).

        Unknown keys are ignored; dashes in keys are accepted for underscores.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            attr = str(key).replace("-", "_")
            if attr in known and value is not None:
                values[attr] = value
        return cls(**values)

    @classmethod
    def from_args(cls, args: Any, base: Optional["BodegaConfig"] = None) -> "BodegaConfig":
        """Create config from CLI arguments.

        Args:
            args: Parsed CLI arguments namespace.
            base: Settings loaded from a config file; explicit flags win.

        Returns:
            BodegaConfig instance.
        """
        config = base or cls()
        overrides = {
            "host": "HOST",
            "port": "PORT",
            "chef_server": "CHEF_SERVER",
            "chef_client": "CHEF_CLIENT",
            "chef_pem": "CHEF_PEM",
            "base_url": "BASE_URL",
            "poll_interval": "POLL_INTERVAL",
            "timeout": "TIMEOUT",
            "fetch_timeout": "FETCH_TIMEOUT",
        }
        for attr, dest in overrides.items():
            value = getattr(args, dest, None)
            if value is not None:
                setattr(config, attr, value)

        # store_true flags only ever switch on
        if getattr(args, "SKIP_SSL", False):
            config.skip_ssl = True
        if getattr(args, "ALLOW_EXTERNAL", False):
            config.allow_external = True

        return config

    def validate(self) -> None:
        """Check required settings.

        Raises:
            StartupConfigurationError: If a required value is missing or invalid.
        """
        missing = [
            flag for flag, value in (
                ("--chef-server", self.chef_server),
                ("--chef-client", self.chef_client),
                ("--chef-pem", self.chef_pem),
            ) if not value
        ]
        if missing:
            raise StartupConfigurationError(f"Missing required settings: {', '.join(missing)}")
        try:
            self.port = int(self.port)
            self.poll_interval = float(self.poll_interval)
        except (TypeError, ValueError) as exc:
            raise StartupConfigurationError(f"Invalid numeric setting: {exc}") from exc
        if self.poll_interval <= 0:
            raise StartupConfigurationError("Poll interval must be positive")


class BodegaServer:
    """HTTP front end serving the universe and rebuilt cookbook tarballs.

    Keeps the catalog fresh with a background poller and rebuilds each
    requested tarball from the Chef server on demand.
    """

    def __init__(
        self,
        config: BodegaConfig,
        upstream: Optional[UpstreamClient] = None,
        catalog: Optional[Catalog] = None,
    ):
        """Initialize the server.

        Args:
            config: Server configuration.
            upstream: Chef server client; built from the config's key when omitted.

        Raises:
            StartupConfigurationError: If the client key cannot be loaded.
        """
        self._config = config
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

        if upstream is None:
            signer = RequestSigner(config.chef_client, load_private_key(config.chef_pem))
            upstream = UpstreamClient(
                config.chef_server,
                signer,
                timeout=config.timeout,
                skip_ssl=config.skip_ssl,
            )
        self._upstream = upstream
        self._catalog = catalog or Catalog()
        self._poller = CatalogPoller(self._upstream, self._catalog, config.base_url)

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def poller(self) -> CatalogPoller:
        return self._poller

    def _create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/", self._landing_page)
        app.router.add_get("/_bodega/health", self._health_check)
        app.router.add_get("/universe", self._handle_universe)
        app.router.add_get("/cookbooks/{name}/{version}", self._handle_cookbook)
        app.router.add_get("/cookbooks/{name}/{version}/download", self._handle_cookbook)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _landing_page(self, request: web.Request) -> web.Response:
        return web.Response(text=LANDING_PAGE, content_type="text/html")

    async def _health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        snapshot = self._catalog.snapshot()
        return web.json_response({
            "status": "ok",
            "version": VERSION,
            "catalog": snapshot.stats(),
            "last_refresh": self._poller.last_refresh,
            "polling": self._poller.is_polling,
        })

    async def _on_startup(self, app: web.Application) -> None:
        """Called when the server starts."""
        await self._upstream.start()
        self._poller.start_polling(self._config.poll_interval)
        logger.info("Chef Bodega %s starting on %s:%s", VERSION, self._config.host, self._config.port)

    async def _on_cleanup(self, app: web.Application) -> None:
        """Called when the server stops."""
        if self._poller.is_polling:
            self._poller.stop_polling()
            await self._poller.wait_closed()
        await self._upstream.stop()
        logger.info("Chef Bodega stopped")

    async def _handle_universe(self, request: web.Request) -> web.Response:
        """Serve the catalog as a Berkshelf universe."""
        try:
            body = json.dumps(self._catalog.snapshot().to_universe())
        except (TypeError, ValueError) as exc:
            logger.error("Failed to serialize universe: %s", exc)
            return web.Response(status=500, text=str(exc))
        return web.Response(text=body, content_type="application/json")

    async def _handle_cookbook(self, request: web.Request) -> web.Response:
        """Serve a rebuilt tarball for one cookbook version."""
        name = request.match_info["name"]
        version = request.match_info["version"]
        logger.info("Cookbook request: %s/%s", name, version)

        try:
            reader = await self.create_cookbook_tarball(name, version)
        except BodegaError as exc:
            return web.Response(status=500, text=str(exc))

        return web.Response(
            body=reader.getvalue(),
            content_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{name}-{version}.tar.gz"'},
        )

    def _new_assembler(self, job: AssemblyJob) -> ArtifactAssembler:
        return ArtifactAssembler(
            job,
            skip_ssl=self._config.skip_ssl,
            fetch_timeout=self._config.fetch_timeout,
        )

    async def create_cookbook_tarball(self, name: str, version: str) -> io.BytesIO:
        """Rebuild the tarball of a cataloged cookbook version.

        The manifest is fetched again because the file URLs handed out by the
        Chef server carry credentials that expire; the catalog only keeps the
        structure.

        Raises:
            VersionNotFoundError: If the version is not cataloged (no network I/O
                happens) or upstream no longer knows it.
            UpstreamError: If the version detail cannot be fetched.
            FetchError: If a file download fails.
            ArchiveWriteError: If writing the tarball fails.
        """
        job = AssemblyJob(name, version)
        if (name, version) not in self._catalog.snapshot():
            error = VersionNotFoundError(name, version)
            job.fail(error)
            raise error

        job.advance(JobState.RESOLVING)
        try:
            detail = await self._upstream.get_version_detail(name, version)
        except BodegaError as exc:
            job.fail(exc)
            raise
        if detail is None:
            error = VersionNotFoundError(name, version, "Cookbook version not found upstream")
            job.fail(error)
            raise error

        job.manifest = detail.manifest
        return await self._new_assembler(job).run()

    async def start(self) -> None:
        """Start the proxy server."""
        self._app = self._create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await site.start()

        logger.info(
            "Chef Bodega listening on http://%s:%s",
            self._config.host, self._config.port,
        )
        logger.info("Chef server: %s", self._config.chef_server)
        logger.info("Universe base URL: %s", self._config.base_url)

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None


def run_proxy_server_sync(config: BodegaConfig) -> None:
    """Run the proxy server synchronously.

    Installs signal handlers for SIGTERM and SIGINT for clean shutdown.

    Args:
        config: Server configuration.

    Raises:
        StartupConfigurationError: If the client key cannot be loaded.
    """
    server = BodegaServer(config)
    loop = asyncio.new_event_loop()

    async def run():
        await server.start()
        stop_event = asyncio.Event()
        running_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            running_loop.add_signal_handler(sig, stop_event.set)
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
        await server.stop()

    try:
        loop.run_until_complete(run())
    except KeyboardInterrupt:
        # Fallback for platforms where signal handlers don't work (Windows)
        loop.run_until_complete(server.stop())
    finally:
        loop.close()
        logger.info("Proxy server shutdown complete")
