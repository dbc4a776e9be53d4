"""Unit tests for version probing and body download."""

import asyncio

import httpx
import pytest

from pullcache.cache import fetcher as fetcher_module
from pullcache.cache.fetcher import ProbeResult, ResourceFetcher, is_temp_file, temp_path_for
from pullcache.errors import (
    FetchTimeoutError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    RedirectLoopOrExceededError,
    VersionUnavailableError,
)

ICON_URL = "http://example.com/icon.png"


def build_redirect_chain(origin, hops):
    """Register a chain of `hops` redirects ending in a served resource."""
    for i in range(hops):
        origin.redirect(f"http://example.com/r{i}", f"http://example.com/r{i + 1}")
    origin.serve(f"http://example.com/r{hops}", body=b"end", etag="final")
    return "http://example.com/r0"


class TestProbe:
    """Test version probing."""

    @pytest.mark.asyncio
    async def test_probe_uses_etag(self, origin, config):
        """Test that the ETag header is used as version."""
        origin.serve(ICON_URL, etag="v1", last_modified="Tue, 01 Jan 2013 00:00:00 GMT")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            result = await fetcher.probe(ICON_URL)

        assert result == ProbeResult(url=ICON_URL, version="v1", redirects=0)
        assert origin.count("HEAD", ICON_URL) == 1
        assert origin.count("GET") == 0

    @pytest.mark.asyncio
    async def test_probe_falls_back_to_last_modified(self, origin, config):
        """Test Last-Modified is used when there is no ETag."""
        origin.serve(ICON_URL, last_modified="Tue, 01 Jan 2013 00:00:00 GMT")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            result = await fetcher.probe(ICON_URL)

        assert result.version == "Tue, 01 Jan 2013 00:00:00 GMT"

    @pytest.mark.asyncio
    async def test_probe_without_version_headers(self, origin, config):
        """Test that a response without version headers fails."""
        origin.serve(ICON_URL)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(VersionUnavailableError):
                await fetcher.probe(ICON_URL)

    @pytest.mark.asyncio
    async def test_probe_not_found(self, origin, config):
        """Test that a 404 fails with NotFoundError carrying the status."""
        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(NotFoundError) as exc_info:
                await fetcher.probe("http://example.com/missing")

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_redirect_without_location_is_not_found(self, origin, config):
        """Test that a 3xx without Location is terminal."""
        origin.serve(ICON_URL, status=304)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(NotFoundError):
                await fetcher.probe(ICON_URL)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["ftp://example.com/icon.png", "file:///etc/passwd"])
    async def test_unsupported_scheme_makes_no_request(self, origin, config, url):
        """Test that non-http(s) URLs fail before any network call."""
        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(ProtocolError):
                await fetcher.probe(url)

        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_transport_error_is_network_error(self, origin, config):
        """Test that connection failures are wrapped."""
        origin.fail(ICON_URL, httpx.ConnectError("connection refused"))

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(NetworkError) as exc_info:
                await fetcher.probe(ICON_URL)

        assert not isinstance(exc_info.value, FetchTimeoutError)
        assert exc_info.value.url == ICON_URL

    @pytest.mark.asyncio
    async def test_timeout_is_fetch_timeout_error(self, origin, config):
        """Test that timeouts are classified separately."""
        origin.fail(ICON_URL, httpx.ReadTimeout("timed out"))

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(FetchTimeoutError):
                await fetcher.probe(ICON_URL)


class TestRedirects:
    """Test redirect following during probes."""

    @pytest.mark.asyncio
    async def test_ten_hops_succeed(self, origin, config):
        """Test that a chain of exactly ten redirects is followed."""
        start = build_redirect_chain(origin, 10)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            result = await fetcher.probe(start)

        assert result.version == "final"
        assert result.url == "http://example.com/r10"
        assert result.redirects == 10

    @pytest.mark.asyncio
    async def test_eleven_hops_fail(self, origin, config):
        """Test that an eleventh redirect exceeds the bound."""
        start = build_redirect_chain(origin, 11)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(RedirectLoopOrExceededError) as exc_info:
                await fetcher.probe(start)

        assert exc_info.value.max_redirects == 10
        assert origin.count("HEAD", "http://example.com/r11") == 0

    @pytest.mark.asyncio
    async def test_redirect_loop_fails(self, origin, config):
        """Test that a redirect loop terminates."""
        origin.redirect("http://example.com/a", "http://example.com/b")
        origin.redirect("http://example.com/b", "http://example.com/a")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(RedirectLoopOrExceededError):
                await fetcher.probe("http://example.com/a")

        assert origin.count("HEAD") == 11

    @pytest.mark.asyncio
    async def test_relative_location(self, origin, config):
        """Test that relative Location headers resolve against the current URL."""
        origin.redirect("http://example.com/old/icon.png", "/new/icon.png", status=301)
        origin.serve("http://example.com/new/icon.png", etag="v2")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            result = await fetcher.probe("http://example.com/old/icon.png")

        assert result.url == "http://example.com/new/icon.png"
        assert result.version == "v2"

    @pytest.mark.asyncio
    async def test_redirect_to_unsupported_scheme(self, origin, config):
        """Test that every hop is scheme-checked."""
        origin.redirect(ICON_URL, "ftp://example.com/icon.png")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(ProtocolError):
                await fetcher.probe(ICON_URL)

    @pytest.mark.asyncio
    async def test_configurable_bound(self, origin, tmp_path):
        """Test that max_redirects comes from the configuration."""
        from pullcache.cache.config import CacheConfig

        start = build_redirect_chain(origin, 3)
        config = CacheConfig(cache_root=tmp_path, max_redirects=2)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(RedirectLoopOrExceededError):
                await fetcher.probe(start)


class TestFetch:
    """Test conditional body download."""

    def test_cache_path_layout(self, config):
        """Test cache path is root/subdir/owner/alias-version, sanitized."""
        fetcher = ResourceFetcher(config)

        assert fetcher.cache_path("ca1", "icon", "v1") == config.cache_dir / "ca1" / "icon-v1"

        path = fetcher.cache_path("org/ca1", "img/icon", 'W/"abc"')
        assert path.parent == config.cache_dir / "org%2Fca1"
        assert path.name == "img%2Ficon-W%2F%22abc%22"

    @pytest.mark.parametrize(
        "first,second",
        [
            (("org/ca1", "icon", "v1"), ("org_ca1", "icon", "v1")),
            (("ca1", "a/b", "v1"), ("ca1", "a_b", "v1")),
            (("ca1", "icon", '"v1"'), ("ca1", "icon", "_v1_")),
            (("ca1", "icon-v1", "x"), ("ca1", "icon", "v1-x")),
        ],
    )
    def test_cache_paths_do_not_collide(self, config, first, second):
        """Test that distinct (owner, alias, version) triples get distinct files."""
        fetcher = ResourceFetcher(config)

        assert fetcher.cache_path(*first) != fetcher.cache_path(*second)

    @pytest.mark.asyncio
    async def test_similar_aliases_keep_separate_bodies(self, origin, config):
        """Test that aliases differing around a dash do not overwrite each other."""
        origin.serve("http://example.com/a", body=b"AAA", etag="x")
        origin.serve("http://example.com/b", body=b"BBB", etag="v1-x")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            first = await fetcher.fetch(
                "ca1", "icon-v1", await fetcher.probe("http://example.com/a")
            )
            second = await fetcher.fetch(
                "ca1", "icon", await fetcher.probe("http://example.com/b")
            )

        assert first != second
        assert first.read_bytes() == b"AAA"
        assert second.read_bytes() == b"BBB"
        assert origin.count("GET") == 2

    @pytest.mark.asyncio
    async def test_disk_io_runs_in_worker_threads(self, origin, config, monkeypatch):
        """Test that file writes and the final rename are moved off the event loop."""
        origin.serve(ICON_URL, body=b"x" * 10, etag="v1")
        config.chunk_size = 4
        calls = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            calls.append(getattr(func, "__name__", repr(func)))
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(fetcher_module.asyncio, "to_thread", recording_to_thread)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            path = await fetcher.fetch("ca1", "icon", ProbeResult(ICON_URL, "v1"))

        assert path.read_bytes() == b"x" * 10
        assert calls.count("write") >= 3
        assert "replace" in calls
        assert "mkdir" in calls
        assert "close" in calls

    def test_temp_names(self, config):
        """Test that download temp files are recognized and cache files are not."""
        path = ResourceFetcher(config).cache_path("ca1", "icon", "v1.tmp")
        temp = temp_path_for(path)

        assert temp.parent == path.parent
        assert temp != temp_path_for(path)
        assert is_temp_file(temp.name)
        assert not is_temp_file(path.name)
        assert not is_temp_file("icon-v1.0123456789abcdef0123456789abcdef.tmp")

    @pytest.mark.asyncio
    async def test_fetch_writes_body(self, origin, config):
        """Test that a new version is downloaded to its cache path."""
        origin.serve(ICON_URL, body=b"PNGDATA", etag="v1")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            probe = await fetcher.probe(ICON_URL)
            path = await fetcher.fetch("ca1", "icon", probe)

        assert path == config.cache_root / "pull_cache" / "ca1" / "icon-v1"
        assert path.read_bytes() == b"PNGDATA"
        assert list(path.parent.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_fetch_skips_existing_version(self, origin, config):
        """Test that an already cached version is not downloaded again."""
        origin.serve(ICON_URL, body=b"PNGDATA", etag="v1")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            probe = await fetcher.probe(ICON_URL)
            first = await fetcher.fetch("ca1", "icon", probe)
            second = await fetcher.fetch("ca1", "icon", probe)

        assert first == second
        assert origin.count("GET", ICON_URL) == 1

    @pytest.mark.asyncio
    async def test_existing_file_survives_new_fetcher(self, origin, config):
        """Test idempotence across fetcher instances (process restarts)."""
        origin.serve(ICON_URL, body=b"PNGDATA", etag="v1")
        path = ResourceFetcher(config).cache_path("ca1", "icon", "v1")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"OLD")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            result = await fetcher.fetch("ca1", "icon", ProbeResult(ICON_URL, "v1"))

        assert result.read_bytes() == b"OLD"
        assert origin.count("GET") == 0

    @pytest.mark.asyncio
    async def test_failed_download_leaves_no_file(self, origin, config):
        """Test that a failed GET neither creates the cache file nor leaves temp files."""
        origin.serve(ICON_URL, status=500)

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            with pytest.raises(NotFoundError):
                await fetcher.fetch("ca1", "icon", ProbeResult(ICON_URL, "v1"))
            path = fetcher.cache_path("ca1", "icon", "v1")

        assert not path.exists()
        assert list(path.parent.iterdir()) == []

    @pytest.mark.asyncio
    async def test_download_fetches_final_url(self, origin, config):
        """Test the body is fetched from the URL resolved by the probe."""
        origin.redirect(ICON_URL, "http://cdn.example.com/icon.png")
        origin.serve("http://cdn.example.com/icon.png", body=b"CDN", etag="v3")

        async with ResourceFetcher(config, transport=origin.transport) as fetcher:
            probe = await fetcher.probe(ICON_URL)
            path = await fetcher.fetch("ca1", "icon", probe)

        assert path.read_bytes() == b"CDN"
        assert origin.count("GET", "http://cdn.example.com/icon.png") == 1
        assert origin.count("GET", ICON_URL) == 0
