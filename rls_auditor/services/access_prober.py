"""Permission probing against a live gateway.

Infers what a public credential can do with every catalog entity without
mutating remote state:

    - Tables: a zero-row ranged read (select), an OPTIONS capability request
      (insert/update/delete), and an exact-count request (row count).
    - Functions: one POST with an empty JSON object, read for its status only.
    - Buckets: a one-item list request, and an unauthenticated request to the
      bucket's public object path.

Probes for different entities run concurrently on a bounded worker pool and
are joined before the results are returned. Each network call has its own
timeout and each entity has an overall timeout; a failing sub-probe only
degrades its own facet of the result.
"""

import asyncio
import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from rls_auditor.config import Settings, get_settings
from rls_auditor.models.audit import (
    AccessResult,
    Bucket,
    BucketAccessResult,
    BucketReport,
    Catalog,
    Credential,
    FunctionAccessResult,
    Permission,
    ProbeResults,
    TriState,
)
from rls_auditor.services.exceptions import AuthError, NetworkError, NotFoundError

logger = logging.getLogger(__name__)

CONTENT_RANGE_TOTAL = re.compile(r"/(\d+)")
UNAUTHORIZED_STATUSES = (401, 403)
NOT_FOUND_STATUSES = (404,)
RANGE_NOT_SATISFIABLE = 416
PARTIAL_CONTENT = 206

CAPABILITY_HEADERS = ("Allow", "Access-Control-Allow-Methods")
WRITE_VERBS = {"insert": "POST", "update": "PATCH", "delete": "DELETE"}


def parse_content_range_total(header: str | None) -> int | None:
    """Total from a ``Content-Range`` header such as ``0-24/1234`` or ``*/0``."""
    if not header:
        return None
    match = CONTENT_RANGE_TOTAL.search(header)
    if match:
        return int(match.group(1))
    return None


def path_segment(name: str) -> str:
    """Percent-encode an entity name for use as one URL path segment."""
    return quote(name, safe="")


def parse_allowed_methods(response: httpx.Response) -> set[str] | None:
    """Methods advertised by a capability response, or None if not advertised."""
    for name in CAPABILITY_HEADERS:
        value = response.headers.get(name)
        if value:
            return {m.strip().upper() for m in value.split(",") if m.strip()}
    return None


class AccessProber:
    """Runs the non-mutating permission probes for one project endpoint."""

    def __init__(
        self,
        endpoint: str,
        credential: Credential,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.endpoint = endpoint.rstrip("/")
        self.credential = credential
        self.rest_url = self.settings.rest_url(self.endpoint)
        self.storage_url = self.settings.storage_url(self.endpoint)
        self.timeout = self.settings.probe_timeout_seconds
        self._client = client
        self._owns_client = client is None

    @property
    def auth_headers(self) -> dict[str, str]:
        token = self.credential.token
        return {"apikey": token, "Authorization": f"Bearer {token}"}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"User-Agent": self.settings.user_agent})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AccessProber":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Catalog source
    # ------------------------------------------------------------------

    async def fetch_catalog_document(self) -> dict[str, Any]:
        """Fetch the API description served at the gateway root.

        Raises:
            AuthError: On 401/403.
            NotFoundError: On 404.
            NetworkError: On transport failure, timeout or any other status.
        """
        url = f"{self.rest_url}/"
        try:
            response = await self.client.get(
                url,
                headers={**self.auth_headers, "Accept": "application/openapi+json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out fetching API description from {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Could not connect to {url}: {e}") from e

        if response.status_code in UNAUTHORIZED_STATUSES:
            raise AuthError(
                f"Authentication failed ({response.status_code}). Check your anon key."
            )
        if response.status_code in NOT_FOUND_STATUSES:
            raise NotFoundError(f"No API description found at {url}")
        if not response.is_success:
            raise NetworkError(
                f"Failed to fetch API description: {response.status_code} {response.reason_phrase}"
            )

        try:
            document = response.json()
        except ValueError as e:
            raise NetworkError(f"API description at {url} is not valid JSON") from e
        return document if isinstance(document, dict) else {}

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def _select_probe(self, table: str) -> AccessResult:
        try:
            response = await self.client.get(
                f"{self.rest_url}/{path_segment(table)}",
                params={"limit": 0},
                headers={**self.auth_headers, "Range": "0-0", "Prefer": "count=exact"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Select probe failed for {table}: {e}")
            return AccessResult(error=f"Select probe failed: {e}")

        select = response.is_success or response.status_code == RANGE_NOT_SATISFIABLE
        row_count = None
        if select:
            row_count = parse_content_range_total(response.headers.get("Content-Range"))
        return AccessResult(select=select, row_count=row_count)

    async def _capability_probe(self, table: str) -> tuple[Permission, Permission, Permission] | None:
        """Map advertised write verbs to permissions; None when not advertised."""
        try:
            response = await self.client.options(
                f"{self.rest_url}/{path_segment(table)}",
                headers=self.auth_headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Capability probe failed for {table}: {e}")
            return None

        if not response.is_success:
            return None
        methods = parse_allowed_methods(response)
        if methods is None:
            return None
        return (
            Permission.from_bool(WRITE_VERBS["insert"] in methods),
            Permission.from_bool(WRITE_VERBS["update"] in methods),
            Permission.from_bool(WRITE_VERBS["delete"] in methods),
        )

    async def fetch_row_count(self, table: str) -> int | None:
        """Exact row count via HEAD, falling back to a zero-row GET."""
        url = f"{self.rest_url}/{path_segment(table)}"
        headers = {**self.auth_headers, "Prefer": "count=exact"}

        try:
            response = await self.client.head(
                url, params={"select": "*"}, headers=headers, timeout=self.timeout,
            )
            if response.is_success or response.status_code == PARTIAL_CONTENT:
                total = parse_content_range_total(response.headers.get("Content-Range"))
                if total is not None:
                    return total
        except httpx.HTTPError as e:
            logger.debug(f"HEAD count failed for {table}: {e}")

        try:
            response = await self.client.get(
                url, params={"select": "*", "limit": 0}, headers=headers, timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"GET count failed for {table}: {e}")
            return None
        if response.is_success:
            return parse_content_range_total(response.headers.get("Content-Range"))
        return None

    async def probe_table(self, table: str) -> AccessResult:
        """Run the select, capability and row-count probes for one table."""
        result = await self._select_probe(table)

        permissions = await self._capability_probe(table)
        if permissions is None:
            note = "Could not determine write permissions (OPTIONS not supported)"
            result = result.model_copy(update={
                "error": f"{result.error}; {note}" if result.error else note,
            })
        else:
            result = result.with_permissions(*permissions)

        if result.select:
            count = await self.fetch_row_count(table)
            if count is not None:
                result = result.model_copy(update={"row_count": count})

        return result

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    async def probe_function(self, name: str) -> FunctionAccessResult:
        """Invoke a function with an empty payload and classify the status."""
        try:
            response = await self.client.post(
                f"{self.rest_url}/rpc/{path_segment(name)}",
                json={},
                headers=self.auth_headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Function probe failed for {name}: {e}")
            return FunctionAccessResult(
                accessible=False,
                requires_auth=TriState.UNKNOWN,
                error=str(e) or e.__class__.__name__,
            )

        status = response.status_code
        if status in UNAUTHORIZED_STATUSES:
            return FunctionAccessResult(accessible=True, requires_auth=TriState.TRUE, http_status=status)
        if status in NOT_FOUND_STATUSES:
            return FunctionAccessResult(accessible=False, requires_auth=TriState.UNKNOWN, http_status=status)
        # 200, 400, 422 and friends all prove the function is reachable
        return FunctionAccessResult(accessible=True, requires_auth=TriState.FALSE, http_status=status)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def list_buckets(self) -> list[Bucket]:
        """Enumerate storage buckets visible to the credential."""
        try:
            response = await self.client.get(
                f"{self.storage_url}/bucket",
                headers=self.auth_headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Bucket listing failed: {e}")
            return []
        if not response.is_success:
            return []

        try:
            data = response.json()
        except ValueError:
            return []

        buckets: list[Bucket] = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict):
                continue
            bucket_id = item.get("id") or item.get("name")
            if not bucket_id:
                continue
            buckets.append(Bucket(
                id=str(bucket_id),
                name=str(item.get("name") or bucket_id),
                public=item.get("public") is True,
            ))
        return buckets

    async def probe_bucket(self, bucket_id: str) -> BucketAccessResult:
        can_list = False
        file_count = None
        error = None
        try:
            response = await self.client.post(
                f"{self.storage_url}/object/list/{path_segment(bucket_id)}",
                json={"limit": 1, "prefix": ""},
                headers=self.auth_headers,
                timeout=self.timeout,
            )
            if response.is_success:
                can_list = True
                files = response.json()
                file_count = len(files) if isinstance(files, list) else None
        except (httpx.HTTPError, ValueError) as e:
            error = f"List probe failed: {e}"

        is_public = False
        try:
            # deliberately without credential headers
            response = await self.client.get(
                f"{self.storage_url}/object/public/{path_segment(bucket_id)}/",
                timeout=self.timeout,
            )
            is_public = response.status_code not in (400, 404) and response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug(f"Public read probe failed for bucket {bucket_id}: {e}")

        return BucketAccessResult(
            can_list=can_list,
            is_public=is_public,
            file_count=file_count,
            error=error,
        )

    # ------------------------------------------------------------------
    # Policy catalog
    # ------------------------------------------------------------------

    async def fetch_policies(self) -> list[dict[str, Any]] | None:
        """Try to read row-level policies through exposed system views."""
        attempts = (
            ("GET", f"{self.rest_url}/pg_policies", {"params": {"limit": 100}}),
            ("POST", f"{self.rest_url}/rpc/get_policies", {"json": {}}),
        )
        for method, url, kwargs in attempts:
            try:
                response = await self.client.request(
                    method, url, headers=self.auth_headers, timeout=self.timeout, **kwargs,
                )
                if response.is_success:
                    data = response.json()
                    if isinstance(data, list):
                        return [row for row in data if isinstance(row, dict)]
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"Policy read via {url} failed: {e}")
        return None

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _bounded(self, semaphore: asyncio.Semaphore, coro, on_error):
        """Run one entity probe; failures become that entity's error, never the batch's."""
        timeout = self.settings.entity_timeout_seconds
        async with semaphore:
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except asyncio.TimeoutError:
                return on_error(f"Timed out after {timeout:g}s")
            except Exception as e:
                logger.warning(f"Probe failed unexpectedly: {e.__class__.__name__}: {e}")
                return on_error(f"Probe failed: {e}")

    async def probe(self, catalog: Catalog) -> ProbeResults:
        """Probe every table, function and bucket, then join.

        Entities are probed concurrently, at most ``max_concurrency`` at a
        time. An entity that exceeds ``entity_timeout_seconds`` is recorded
        with undetermined fields, as is one whose probe fails unexpectedly.
        Cancelling the caller cancels every in-flight probe.
        """
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        table_names = [t.name for t in catalog.tables]
        function_names = [f.name for f in catalog.functions]

        logger.info(
            f"Probing {len(table_names)} tables and {len(function_names)} functions "
            f"on {self.endpoint}"
        )

        table_tasks = [
            self._bounded(semaphore, self.probe_table(name), lambda error: AccessResult(error=error))
            for name in table_names
        ]
        function_tasks = [
            self._bounded(
                semaphore,
                self.probe_function(name),
                lambda error: FunctionAccessResult(error=error),
            )
            for name in function_names
        ]

        table_results, function_results, buckets, policies = await asyncio.gather(
            asyncio.gather(*table_tasks),
            asyncio.gather(*function_tasks),
            self._probe_buckets(semaphore),
            self.fetch_policies(),
        )

        return ProbeResults(
            tables=dict(zip(table_names, table_results)),
            functions=dict(zip(function_names, function_results)),
            buckets=tuple(buckets),
            rls_policies=policies,
        )

    async def _probe_buckets(self, semaphore: asyncio.Semaphore) -> list[BucketReport]:
        buckets = await self.list_buckets()
        results = await asyncio.gather(*[
            self._bounded(
                semaphore,
                self.probe_bucket(bucket.id),
                lambda error: BucketAccessResult(error=error),
            )
            for bucket in buckets
        ])
        return [
            BucketReport(id=bucket.id, name=bucket.name, public=bucket.public, access=access)
            for bucket, access in zip(buckets, results)
        ]
