"""
Tests for the access prober.
"""

import asyncio

import httpx
import pytest

from rls_auditor.config import Settings
from rls_auditor.models.audit import Catalog, Permission, RpcFunction, TableSchema, TriState
from rls_auditor.services import credential_decoder
from rls_auditor.services.access_prober import (
    AccessProber,
    parse_allowed_methods,
    parse_content_range_total,
)
from rls_auditor.services.exceptions import AuthError, NetworkError, NotFoundError

PROJECT = "https://abcdefghijklmnop.supabase.co"


def make_prober(handler, settings: Settings, anon_key: str) -> AccessProber:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    credential = credential_decoder.load_credential(anon_key)
    return AccessProber(PROJECT, credential, settings=settings, client=client)


def table_handler(
    select_status: int = 200,
    allow: str | None = "GET, POST, PATCH, DELETE",
    total: int = 50,
):
    """Handler simulating a single table gateway."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET" and request.url.path == "/rest/v1/users":
            if select_status >= 400 and select_status != 416:
                return httpx.Response(select_status, json={"message": "permission denied"})
            return httpx.Response(select_status, headers={"Content-Range": f"*/{total}"}, json=[])
        if request.method == "OPTIONS":
            headers = {"Allow": allow} if allow else {}
            return httpx.Response(200, headers=headers)
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Range": f"0-0/{total}"})
        return httpx.Response(404)

    handler.seen = seen
    return handler


class TestHeaderParsing:
    """Tests for response header helpers."""

    def test_content_range_total(self):
        """Test exact totals are read from Content-Range."""
        assert parse_content_range_total("0-24/1234") == 1234
        assert parse_content_range_total("*/0") == 0
        assert parse_content_range_total("0-24/*") is None
        assert parse_content_range_total(None) is None

    def test_allowed_methods_fallback_header(self):
        """Test CORS allow-methods is used when Allow is absent."""
        response = httpx.Response(200, headers={"Access-Control-Allow-Methods": "get,post"})
        assert parse_allowed_methods(response) == {"GET", "POST"}
        assert parse_allowed_methods(httpx.Response(200)) is None


class TestFetchCatalogDocument:
    """Tests for fetching the API description."""

    @pytest.mark.asyncio
    async def test_success(self, settings, anon_key):
        """Test the document is fetched with credential headers."""
        requests: list[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"paths": {}})

        prober = make_prober(handler, settings, anon_key)
        assert await prober.fetch_catalog_document() == {"paths": {}}

        request = requests[0]
        assert str(request.url) == f"{PROJECT}/rest/v1/"
        assert request.headers["apikey"] == anon_key
        assert request.headers["Authorization"] == f"Bearer {anon_key}"
        assert request.headers["Accept"] == "application/openapi+json"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (401, AuthError),
        (403, AuthError),
        (404, NotFoundError),
        (500, NetworkError),
    ])
    async def test_error_statuses(self, settings, anon_key, status, error):
        """Test statuses map to the error taxonomy."""
        prober = make_prober(lambda request: httpx.Response(status), settings, anon_key)
        with pytest.raises(error):
            await prober.fetch_catalog_document()

    @pytest.mark.asyncio
    async def test_unreachable(self, settings, anon_key):
        """Test transport failures raise NetworkError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        prober = make_prober(handler, settings, anon_key)
        with pytest.raises(NetworkError):
            await prober.fetch_catalog_document()


class TestProbeTable:
    """Tests for table probing."""

    @pytest.mark.asyncio
    async def test_full_access(self, settings, anon_key):
        """Test a fully open table reports every permission allowed."""
        handler = table_handler()
        result = await make_prober(handler, settings, anon_key).probe_table("users")

        assert result.select is True
        assert result.insert is Permission.ALLOWED
        assert result.update is Permission.ALLOWED
        assert result.delete is Permission.ALLOWED
        assert result.row_count == 50
        assert result.error is None

        select_request = handler.seen[0]
        assert select_request.url.params["limit"] == "0"
        assert select_request.headers["Range"] == "0-0"
        assert select_request.headers["Prefer"] == "count=exact"

    @pytest.mark.asyncio
    async def test_read_only_table(self, settings, anon_key):
        """Test advertised verbs map to allowed and denied."""
        result = await make_prober(table_handler(allow="GET, HEAD"), settings, anon_key).probe_table("users")
        assert result.insert is Permission.DENIED
        assert result.update is Permission.DENIED
        assert result.delete is Permission.DENIED

    @pytest.mark.asyncio
    async def test_missing_capability_signal_is_unknown(self, settings, anon_key):
        """Test absence of an Allow header never means denied."""
        result = await make_prober(table_handler(allow=None), settings, anon_key).probe_table("users")
        assert result.select is True
        assert result.insert is Permission.UNKNOWN
        assert result.update is Permission.UNKNOWN
        assert result.delete is Permission.UNKNOWN
        assert "Could not determine write permissions" in result.error

    @pytest.mark.asyncio
    async def test_empty_range_counts_as_select(self, settings, anon_key):
        """Test 416 on an empty collection still means select is allowed."""
        handler = table_handler(select_status=416, total=0)
        result = await make_prober(handler, settings, anon_key).probe_table("users")
        assert result.select is True
        assert result.row_count == 0

    @pytest.mark.asyncio
    async def test_denied_select_skips_row_count(self, settings, anon_key):
        """Test no count request is made when select is denied."""
        handler = table_handler(select_status=401)
        result = await make_prober(handler, settings, anon_key).probe_table("users")

        assert result.select is False
        assert result.row_count is None
        assert "HEAD" not in [r.method for r in handler.seen]

    @pytest.mark.asyncio
    async def test_capability_failure_is_isolated(self, settings, anon_key):
        """Test a failing OPTIONS call does not abort the other sub-probes."""
        base = table_handler()

        def handler(request):
            if request.method == "OPTIONS":
                raise httpx.ReadTimeout("slow", request=request)
            return base(request)

        result = await make_prober(handler, settings, anon_key).probe_table("users")
        assert result.select is True
        assert result.row_count == 50
        assert result.insert is Permission.UNKNOWN

    @pytest.mark.asyncio
    async def test_row_count_falls_back_to_get(self, settings, anon_key):
        """Test the zero-row GET is used when HEAD gives no total."""
        base = table_handler(total=7)

        def handler(request):
            if request.method == "HEAD":
                return httpx.Response(405)
            return base(request)

        result = await make_prober(handler, settings, anon_key).probe_table("users")
        assert result.row_count == 7


class TestProbeFunction:
    """Tests for function probing."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,accessible,requires_auth", [
        (200, True, TriState.FALSE),
        (400, True, TriState.FALSE),
        (401, True, TriState.TRUE),
        (403, True, TriState.TRUE),
        (404, False, TriState.UNKNOWN),
    ])
    async def test_status_classification(self, settings, anon_key, status, accessible, requires_auth):
        """Test the invocation status maps to accessibility."""
        requests: list[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(status, json={})

        result = await make_prober(handler, settings, anon_key).probe_function("delete_user")

        assert result.accessible is accessible
        assert result.requires_auth is requires_auth
        assert result.http_status == status
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/rest/v1/rpc/delete_user"
        assert requests[0].content == b"{}"

    @pytest.mark.asyncio
    async def test_network_failure(self, settings, anon_key):
        """Test transport failures leave authorization unknown with an error."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await make_prober(handler, settings, anon_key).probe_function("f")
        assert result.requires_auth is TriState.UNKNOWN
        assert result.accessible is False
        assert result.error


class TestProbeBuckets:
    """Tests for storage probing."""

    @staticmethod
    def storage_handler(requests):
        def handler(request):
            requests.append(request)
            path = request.url.path
            if path == "/storage/v1/bucket":
                return httpx.Response(200, json=[{"id": "avatars", "name": "avatars", "public": False}])
            if path == "/storage/v1/object/list/avatars":
                return httpx.Response(200, json=[{"name": "me.png"}])
            if path == "/storage/v1/object/public/avatars/":
                return httpx.Response(200)
            return httpx.Response(404)
        return handler

    @pytest.mark.asyncio
    async def test_list_and_public_probes(self, settings, anon_key):
        """Test listability and unauthenticated readability are probed."""
        requests: list[httpx.Request] = []
        prober = make_prober(self.storage_handler(requests), settings, anon_key)

        buckets = await prober.list_buckets()
        assert [b.id for b in buckets] == ["avatars"]

        result = await prober.probe_bucket("avatars")
        assert result.can_list is True
        assert result.file_count == 1
        assert result.is_public is True

        public_request = requests[-1]
        assert "apikey" not in public_request.headers
        assert "Authorization" not in public_request.headers

    @pytest.mark.asyncio
    async def test_private_bucket(self, settings, anon_key):
        """Test 400/404 on the public path means not public."""
        def handler(request):
            if request.url.path.startswith("/storage/v1/object/list/"):
                return httpx.Response(403)
            return httpx.Response(400)

        result = await make_prober(handler, settings, anon_key).probe_bucket("private")
        assert result.can_list is False
        assert result.is_public is False
        assert result.file_count is None

    @pytest.mark.asyncio
    async def test_public_flag_must_be_boolean(self, settings, anon_key):
        """Test only a literal true marks a bucket public."""
        listing = [
            {"id": "a", "public": True},
            {"id": "b", "public": "false"},
            {"id": "c", "public": 1},
            {"id": "d"},
        ]
        prober = make_prober(lambda request: httpx.Response(200, json=listing), settings, anon_key)
        buckets = await prober.list_buckets()
        assert [(b.id, b.public) for b in buckets] == [("a", True), ("b", False), ("c", False), ("d", False)]

    @pytest.mark.asyncio
    async def test_bucket_id_is_encoded(self, settings, anon_key):
        """Test bucket ids are sent as a single escaped path segment."""
        requests: list[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(404)

        await make_prober(handler, settings, anon_key).probe_bucket("team/a b")
        assert [r.url.raw_path for r in requests] == [
            b"/storage/v1/object/list/team%2Fa%20b",
            b"/storage/v1/object/public/team%2Fa%20b/",
        ]

    @pytest.mark.asyncio
    async def test_bucket_listing_failure(self, settings, anon_key):
        """Test an unreadable bucket list yields no buckets."""
        prober = make_prober(lambda request: httpx.Response(401), settings, anon_key)
        assert await prober.list_buckets() == []


class TestProbeCatalog:
    """Tests for the concurrent fan-out."""

    @pytest.mark.asyncio
    async def test_every_entity_has_a_result(self, settings, anon_key):
        """Test tables, functions, buckets and policies are all joined."""
        def handler(request):
            path = request.url.path
            if path == "/rest/v1/pg_policies":
                return httpx.Response(200, json=[{"tablename": "users", "policyname": "read"}])
            if path.startswith("/rest/v1/rpc/"):
                return httpx.Response(401)
            if path == "/storage/v1/bucket":
                return httpx.Response(200, json=[{"id": "docs", "name": "docs"}])
            if request.method == "OPTIONS":
                return httpx.Response(200, headers={"Allow": "GET"})
            if path.startswith("/rest/v1/"):
                return httpx.Response(200, headers={"Content-Range": "*/3"}, json=[])
            return httpx.Response(404)

        catalog = Catalog(
            tables=(TableSchema(name="users"), TableSchema(name="posts")),
            functions=(RpcFunction(name="get_stats"),),
        )
        results = await make_prober(handler, settings, anon_key).probe(catalog)

        assert set(results.tables) == {"users", "posts"}
        assert results.tables["users"].row_count == 3
        assert results.functions["get_stats"].requires_auth is TriState.TRUE
        assert [b.id for b in results.buckets] == ["docs"]
        assert results.rls_policies == [{"tablename": "users", "policyname": "read"}]

    @pytest.mark.asyncio
    async def test_slow_entity_times_out_alone(self, anon_key):
        """Test an entity exceeding its budget is recorded, not fatal."""
        settings = Settings(probe_timeout_seconds=5.0, entity_timeout_seconds=0.1, max_concurrency=4)

        async def handler(request):
            if request.url.path == "/rest/v1/slow":
                await asyncio.sleep(1)
            if request.method == "OPTIONS":
                return httpx.Response(200, headers={"Allow": "GET"})
            if request.url.path in ("/rest/v1/slow", "/rest/v1/fast"):
                return httpx.Response(200, headers={"Content-Range": "*/1"}, json=[])
            return httpx.Response(404)

        catalog = Catalog(tables=(TableSchema(name="slow"), TableSchema(name="fast")))
        results = await make_prober(handler, settings, anon_key).probe(catalog)

        assert results.tables["slow"].error.startswith("Timed out")
        assert results.tables["slow"].select is False
        assert results.tables["slow"].insert is Permission.UNKNOWN
        assert results.tables["fast"].select is True
        assert results.tables["fast"].error is None

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(self, anon_key):
        """Test no more than max_concurrency entities are probed at once."""
        settings = Settings(max_concurrency=2)
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            if not request.url.path.startswith("/rest/v1/t"):
                return httpx.Response(404)
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200, headers={"Allow": "GET"})

        catalog = Catalog(tables=tuple(TableSchema(name=f"t{i}") for i in range(6)))
        results = await make_prober(handler, settings, anon_key).probe(catalog)

        assert len(results.tables) == 6
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_probes_never_write(self, settings, anon_key):
        """Test tables only ever see read and capability requests."""
        requests: list[httpx.Request] = []

        def handler(request):
            requests.append(request)
            path = request.url.path
            if path == "/storage/v1/bucket":
                return httpx.Response(200, json=[{"id": "docs", "name": "docs", "public": True}])
            if path.startswith("/storage/v1/object/"):
                return httpx.Response(200, json=[])
            if path.startswith("/rest/v1/rpc/"):
                return httpx.Response(200, json=None)
            if request.method == "OPTIONS":
                return httpx.Response(200, headers={"Allow": "GET, POST, PATCH, DELETE, PUT"})
            if path in ("/rest/v1/users", "/rest/v1/posts"):
                return httpx.Response(200, headers={"Content-Range": "0-0/7"}, json=[])
            return httpx.Response(404)

        catalog = Catalog(
            tables=(TableSchema(name="users"), TableSchema(name="posts")),
            functions=(RpcFunction(name="delete_user"), RpcFunction(name="get_stats")),
        )
        results = await make_prober(handler, settings, anon_key).probe(catalog)
        assert results.tables["users"].delete is Permission.ALLOWED

        table_requests = [
            r for r in requests
            if r.url.path.startswith("/rest/v1/") and not r.url.path.startswith("/rest/v1/rpc/")
        ]
        assert table_requests
        assert {r.method for r in table_requests} <= {"GET", "HEAD", "OPTIONS"}

        for request in requests:
            assert request.method not in ("PATCH", "PUT", "DELETE")
            if request.method == "POST":
                assert request.url.path.startswith(("/rest/v1/rpc/", "/storage/v1/object/list/"))

        rpc_calls = [r for r in requests if r.url.path in ("/rest/v1/rpc/delete_user", "/rest/v1/rpc/get_stats")]
        assert [r.content for r in rpc_calls] == [b"{}", b"{}"]

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_isolated(self, settings, anon_key):
        """Test a non-transport error in one entity leaves its siblings intact."""
        def handler(request):
            path = request.url.path
            if path == "/storage/v1/bucket":
                return httpx.Response(200, json=[{"id": "bad\x01id"}])
            if path == "/rest/v1/broken":
                raise RuntimeError("gateway exploded")
            if request.method == "OPTIONS":
                return httpx.Response(200, headers={"Allow": "GET"})
            if path == "/rest/v1/users":
                return httpx.Response(200, headers={"Content-Range": "*/2"}, json=[])
            return httpx.Response(404)

        catalog = Catalog(tables=(TableSchema(name="users"), TableSchema(name="broken")))
        results = await make_prober(handler, settings, anon_key).probe(catalog)

        assert results.tables["users"].select is True
        assert results.tables["users"].row_count == 2
        assert results.tables["broken"].select is False
        assert "gateway exploded" in results.tables["broken"].error
        assert [b.id for b in results.buckets] == ["bad\x01id"]
        assert results.buckets[0].access.is_public is False
