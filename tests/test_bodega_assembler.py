"""Tests for the two-stage tarball assembly pipeline."""

import asyncio
import io
import tarfile

import pytest

aiohttp_mod = pytest.importorskip("aiohttp")

from aiohttp import test_utils, web

from bodega.assembler import ArtifactAssembler, AssemblyJob, JobState
from bodega.errors import ArchiveWriteError, FetchError
from bodega.models import FileCategory, FileDescriptor, Manifest

BUILD_TIME = 1700000000


class _DummyResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def read(self):
        return self._body


class _DummyRequest:
    """Async context manager returned by ``_DummySession.get``."""

    def __init__(self, session, url):
        self._session = session
        self._url = url

    async def __aenter__(self):
        delay = self._session.delays.get(self._url, 0)
        if delay:
            await asyncio.sleep(delay)
        error = self._session.errors.get(self._url)
        if error is not None:
            raise error
        status, body = self._session.files.get(self._url, (404, b"not found"))
        return _DummyResponse(status, body)

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _DummySession:
    def __init__(self, files, delays=None, errors=None):
        self.files = files
        self.delays = delays or {}
        self.errors = errors or {}
        self.requested = []
        self.closed = False

    def get(self, url):
        self.requested.append(url)
        return _DummyRequest(self, url)

    async def close(self):
        self.closed = True


def _url(path):
    return f"https://bookshelf.test/{path}?AWSAccessKeyId=x&Signature=y"


def _manifest(layout):
    """Build a manifest from ``{category: [path, ...]}``."""
    return Manifest({
        category: tuple(FileDescriptor(path, category, _url(path)) for path in paths)
        for category, paths in layout.items()
    })


def _job(name, version, manifest):
    job = AssemblyJob(name, version, manifest=manifest)
    job.advance(JobState.RESOLVING)
    return job


def _entries(buffer):
    with tarfile.open(fileobj=io.BytesIO(buffer.getvalue()), mode="r:gz") as tar:
        return [(m.name, m.mode, m.mtime, tar.extractfile(m).read()) for m in tar.getmembers()]


def _run(assembler):
    return asyncio.run(assembler.run())


class TestAssemblySuccess:
    def test_two_file_cookbook(self):
        """A simple cookbook yields exactly its files under ``<name>/``."""
        manifest = _manifest({
            FileCategory.FILES: ["metadata.rb"],
            FileCategory.RECIPES: ["recipes/default.rb"],
        })
        session = _DummySession({
            _url("metadata.rb"): (200, b"name 'apache2'\n"),
            _url("recipes/default.rb"): (200, b"package 'apache2'\n"),
        })
        job = _job("apache2", "3.2.0", manifest)

        buffer = _run(ArtifactAssembler(job, session=session, build_time=BUILD_TIME))

        assert buffer.tell() == 0
        assert _entries(buffer) == [
            ("apache2/metadata.rb", 0o644, BUILD_TIME, b"name 'apache2'\n"),
            ("apache2/recipes/default.rb", 0o644, BUILD_TIME, b"package 'apache2'\n"),
        ]
        assert job.state is JobState.COMPLETED
        assert job.error is None
        assert session.closed is False

    def test_order_follows_manifest_not_response_timing(self):
        """Slow early files still land first; order is category then manifest."""
        layout = {
            FileCategory.ROOT_FILES: ["metadata.rb", "README.md"],
            FileCategory.TEMPLATES: ["templates/default/site.erb"],
            FileCategory.RECIPES: ["recipes/default.rb", "recipes/mod_ssl.rb"],
            FileCategory.ATTRIBUTES: ["attributes/default.rb"],
        }
        manifest = _manifest(layout)
        files = {_url(p): (200, p.encode()) for paths in layout.values() for p in paths}
        delays = {_url("templates/default/site.erb"): 0.03, _url("recipes/default.rb"): 0.01}

        first = _run(ArtifactAssembler(
            _job("apache2", "3.2.0", manifest),
            session=_DummySession(files, delays=delays),
            build_time=BUILD_TIME,
        ))
        second = _run(ArtifactAssembler(
            _job("apache2", "3.2.0", manifest),
            session=_DummySession(files),
            build_time=BUILD_TIME,
        ))

        names = [entry[0] for entry in _entries(first)]
        assert names == [
            "apache2/templates/default/site.erb",
            "apache2/recipes/default.rb",
            "apache2/recipes/mod_ssl.rb",
            "apache2/attributes/default.rb",
            "apache2/metadata.rb",
            "apache2/README.md",
        ]
        assert first.getvalue() == second.getvalue()

    def test_entry_set_equals_manifest(self):
        layout = {
            FileCategory.FILES: ["files/default/a.conf", "files/default/b.conf"],
            FileCategory.LIBRARIES: ["libraries/helpers.rb"],
            FileCategory.PROVIDERS: ["providers/site.rb"],
            FileCategory.RESOURCES: ["resources/site.rb"],
            FileCategory.DEFINITIONS: ["definitions/web_app.rb"],
        }
        manifest = _manifest(layout)
        files = {_url(p): (200, b"x") for paths in layout.values() for p in paths}

        buffer = _run(ArtifactAssembler(_job("web", "1.0.0", manifest), session=_DummySession(files)))

        assert {entry[0] for entry in _entries(buffer)} == {f"web/{p}" for p in manifest.paths()}

    def test_empty_manifest_yields_empty_archive(self):
        buffer = _run(ArtifactAssembler(_job("empty", "0.1.0", Manifest()), session=_DummySession({})))
        assert _entries(buffer) == []

    def test_small_queue_applies_backpressure_without_deadlock(self):
        """More files than queue slots still flow through in order."""
        paths = [f"recipes/r{i:02d}.rb" for i in range(25)]
        manifest = _manifest({FileCategory.RECIPES: paths})
        files = {_url(p): (200, p.encode()) for p in paths}

        buffer = _run(ArtifactAssembler(
            _job("big", "1.0.0", manifest), session=_DummySession(files), queue_depth=1,
        ))

        assert [entry[0] for entry in _entries(buffer)] == [f"big/{p}" for p in paths]


class TestAssemblyFailure:
    def test_one_failed_file_fails_everything(self):
        """A 404 on the second file yields an error naming it and no archive."""
        manifest = _manifest({
            FileCategory.RECIPES: ["recipes/a.rb", "recipes/b.rb", "recipes/c.rb"],
        })
        session = _DummySession({
            _url("recipes/a.rb"): (200, b"a"),
            _url("recipes/b.rb"): (404, b"missing"),
            _url("recipes/c.rb"): (200, b"c"),
        })
        job = _job("web", "1.0.0", manifest)
        assembler = ArtifactAssembler(job, session=session)

        with pytest.raises(FetchError) as excinfo:
            _run(assembler)

        assert excinfo.value.path == "recipes/b.rb"
        assert "recipes/b.rb" in str(excinfo.value)
        assert "web/1.0.0" in str(excinfo.value)
        assert "HTTP 404" in str(excinfo.value)
        assert job.state is JobState.FAILED
        assert job.error is excinfo.value
        assert _url("recipes/c.rb") not in session.requested

    def test_transport_error_becomes_fetch_error(self):
        manifest = _manifest({FileCategory.ROOT_FILES: ["metadata.rb"]})
        session = _DummySession(
            {},
            errors={_url("metadata.rb"): aiohttp_mod.ClientConnectionError("connection reset")},
        )

        with pytest.raises(FetchError) as excinfo:
            _run(ArtifactAssembler(_job("web", "1.0.0", manifest), session=session))

        assert "connection reset" in str(excinfo.value)

    def test_missing_source_url_is_a_fetch_error(self):
        """Structural (cached) manifests cannot be assembled directly."""
        manifest = _manifest({FileCategory.ROOT_FILES: ["metadata.rb"]}).structural()

        with pytest.raises(FetchError):
            _run(ArtifactAssembler(_job("web", "1.0.0", manifest), session=_DummySession({})))

    def test_archive_failure_becomes_archive_write_error(self):
        manifest = _manifest({FileCategory.ROOT_FILES: ["metadata.rb"]})
        session = _DummySession({_url("metadata.rb"): (200, b"m")})
        job = _job("web", "1.0.0", manifest)
        assembler = ArtifactAssembler(job, session=session)

        def _broken_entry(fetched):
            raise ValueError("header too large")

        assembler._entry_info = _broken_entry

        with pytest.raises(ArchiveWriteError) as excinfo:
            _run(assembler)

        assert "header too large" in str(excinfo.value)
        assert job.state is JobState.FAILED

    def test_run_requires_manifest(self):
        job = AssemblyJob("web", "1.0.0")
        job.advance(JobState.RESOLVING)

        with pytest.raises(RuntimeError):
            _run(ArtifactAssembler(job, session=_DummySession({})))

    def test_unexpected_stage_error_fails_the_run(self):
        """An error no stage handles still resolves the run instead of hanging."""
        manifest = _manifest({FileCategory.ROOT_FILES: ["metadata.rb"]})
        session = _DummySession({_url("metadata.rb"): (200, b"m")})
        job = _job("web", "1.0.0", manifest)
        assembler = ArtifactAssembler(job, session=session)

        def _broken_entry(fetched):
            raise KeyError("uname")

        assembler._entry_info = _broken_entry

        with pytest.raises(KeyError):
            asyncio.run(asyncio.wait_for(assembler.run(), timeout=5))

        assert job.state is JobState.FAILED
        assert isinstance(job.error, KeyError)


class TestAssemblyJob:
    def test_states_are_never_reentered(self):
        job = AssemblyJob("web", "1.0.0")
        job.advance(JobState.RESOLVING)
        job.advance(JobState.PIPELINING)
        job.advance(JobState.COMPLETED)

        with pytest.raises(RuntimeError):
            job.advance(JobState.FAILED)

    def test_cannot_skip_resolution(self):
        job = AssemblyJob("web", "1.0.0")
        with pytest.raises(RuntimeError):
            job.advance(JobState.PIPELINING)

    def test_fail_records_error(self):
        job = AssemblyJob("web", "1.0.0")
        error = ValueError("x")
        job.fail(error)
        assert job.state is JobState.FAILED
        assert job.error is error
        assert job.label == "web/1.0.0"


def _slow_files_app(files, release):
    """Serve ``files``; ``slow/*`` paths block until ``release`` is set."""

    async def _serve(request):
        path = request.match_info["path"]
        if path.startswith("slow/"):
            await release.wait()
        body = files.get(path)
        if body is None:
            return web.Response(status=404)
        return web.Response(body=body)

    app = web.Application()
    app.router.add_get("/{path:.*}", _serve)
    return app


class TestAssemblyOwnedSession:
    """Runs against a real HTTP server with the assembler's own session."""

    def _assemble(self, paths, files, **kwargs):
        async def _run():
            release = asyncio.Event()
            server = test_utils.TestServer(_slow_files_app(files, release))
            await server.start_server()
            base = str(server.make_url("/")).rstrip("/")
            manifest = Manifest({
                FileCategory.RECIPES: tuple(
                    FileDescriptor(p, FileCategory.RECIPES, f"{base}/{p}?sig=1") for p in paths
                ),
            })
            job = _job("web", "1.0.0", manifest)
            assembler = ArtifactAssembler(job, build_time=BUILD_TIME, **kwargs)
            opened = []
            open_session = assembler._open_session

            def _tracking_open():
                session = open_session()
                opened.append(session)
                return session

            assembler._open_session = _tracking_open
            try:
                return job, opened, await assembler.run()
            except FetchError as exc:
                return job, opened, exc
            finally:
                release.set()
                await server.close()

        return asyncio.run(_run())

    def test_owned_session_is_closed_after_success(self):
        files = {"recipes/default.rb": b"package 'nginx'\n"}

        job, opened, buffer = self._assemble(["recipes/default.rb"], files, skip_ssl=True)

        assert _entries(buffer) == [
            ("web/recipes/default.rb", 0o644, BUILD_TIME, b"package 'nginx'\n"),
        ]
        assert job.state is JobState.COMPLETED
        assert len(opened) == 1
        assert opened[0].closed

    def test_fetch_timeout_fails_slow_download(self):
        """A file slower than ``fetch_timeout`` fails the assembly."""
        files = {"recipes/default.rb": b"a", "slow/recipes/b.rb": b"b"}

        job, opened, error = self._assemble(
            ["recipes/default.rb", "slow/recipes/b.rb"], files, fetch_timeout=0.5,
        )

        assert isinstance(error, FetchError)
        assert error.path == "slow/recipes/b.rb"
        assert error.reason
        assert job.state is JobState.FAILED
        assert opened[0].closed
