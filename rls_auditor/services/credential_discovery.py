"""Heuristic endpoint and credential discovery from a front-end origin.

Used when the operator only knows the public web site of an application.
The page is fetched through an ordered chain of fetch strategies (relays,
then a direct request), then run through an ordered set of independent
extractors:

    1. Static references: script/link attributes and inline script bodies.
    2. Literal scan: environment-style assignments, client constructor calls,
       paired endpoint+key literals, backend domain URLs, and finally a
       structural scan for the longest JWT-shaped literal.
    3. Escalation: when the backend is detected but a field is missing, up to
       ``discovery_max_script_assets`` linked scripts are fetched and scanned
       with step 2 until both fields are known.

Each extractor is a pure ``text -> list[Match]`` function. Matches are
merged first-match-wins per field, in extractor order; every match is
recorded as provenance. Partial results are returned, never raised.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from rls_auditor.config import Settings, get_settings
from rls_auditor.models.audit import DiscoveryResult
from rls_auditor.services.credential_decoder import has_known_prefix
from rls_auditor.services.exceptions import InputValidationError, NetworkError

logger = logging.getLogger(__name__)

ENDPOINT = "endpoint"
CREDENTIAL = "credential"

BACKEND_DOMAIN = r"[a-zA-Z0-9-]+\.supabase\.(?:co|in|com)"
JWT_SHAPE = r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"
MIN_JWT_LENGTH = 50
MIN_RELAY_CONTENT_LENGTH = 100
BUNDLE_SCAN_MIN_LENGTH = 1000

BACKEND_URL_PATTERNS = [
    re.compile(r"\.supabase\.co"),
    re.compile(r"\.supabase\.in"),
    re.compile(r"\.supabase\.com"),
    re.compile(r"supabase\.io"),
    re.compile(r"/(?:rest|auth|realtime|storage|functions)/v1/"),
]

PROJECT_URL_PATTERN = re.compile(rf"(https?://{BACKEND_DOMAIN})")
GATEWAY_PREFIX_PATTERN = re.compile(
    r"(https?://[^/\s'\"]+)/(?:rest|auth|realtime|storage|functions)/v1"
)

GLOBAL_NAMES = [
    "supabaseClient",
    "createClient",
    "supabase",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "_supabase",
    "supabaseAuth",
]

INLINE_SCRIPT_PATTERNS = [
    re.compile(r"createClient\s*\("),
    re.compile(r"from\s+['\"]@supabase"),
    re.compile(r"import.*supabase", re.I),
    re.compile(r"supabaseUrl", re.I),
    re.compile(r"supabaseKey", re.I),
    re.compile(r"\.supabase\.co"),
    re.compile(r"\.supabase\.com"),
    re.compile(r"/rest/v1/"),
    re.compile(r"/auth/v1/"),
    re.compile(r"/realtime/v1/"),
    re.compile(r"\"supabase-js\""),
    re.compile(r"NEXT_PUBLIC_SUPABASE"),
    re.compile(r"REACT_APP_SUPABASE"),
    re.compile(r"VITE_SUPABASE"),
    re.compile(r"process\.env.*SUPABASE", re.I),
]

BUNDLE_PATTERNS = [
    re.compile(r"supabase-js", re.I),
    re.compile(r"createClient.*from.*supabase", re.I),
    re.compile(r"postgrest", re.I),
    re.compile(r"gotrue", re.I),
    re.compile(r"realtime.*supabase", re.I),
]

TEXT_PATTERNS = [
    re.compile(r"supabase\.co", re.I),
    re.compile(r"supabase\.com", re.I),
    re.compile(r"powered by supabase", re.I),
]

ENV_URL_NAMES = [
    "NEXT_PUBLIC_SUPABASE_URL",
    "REACT_APP_SUPABASE_URL",
    "VITE_SUPABASE_URL",
    "PUBLIC_SUPABASE_URL",
    "SUPABASE_URL",
    "supabaseUrl",
]

ENV_KEY_NAMES = [
    "NEXT_PUBLIC_SUPABASE_ANON_KEY",
    "REACT_APP_SUPABASE_ANON_KEY",
    "VITE_SUPABASE_ANON_KEY",
    "PUBLIC_SUPABASE_ANON_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_PUBLISHABLE_KEY",
    "supabaseAnonKey",
    "supabaseKey",
    "anonKey",
]

QUOTED = r"['\"]([^'\"]+)['\"]"

CONSTRUCTOR_PATTERNS = [
    # createClient("url", "key")
    re.compile(rf"createClient\s*\(\s*{QUOTED}\s*,\s*{QUOTED}"),
    # createClient({ url: ..., anonKey: ... }) and the reverse order
    re.compile(rf"createClient\s*\(\s*\{{[^}}]*url:\s*{QUOTED}[^}}]*anonKey:\s*{QUOTED}"),
    re.compile(rf"createClient\s*\(\s*\{{[^}}]*anonKey:\s*{QUOTED}[^}}]*url:\s*{QUOTED}"),
    # keyword arguments spread over several lines
    re.compile(rf"createClient\s*\([^)]*url[^:]*:\s*{QUOTED}[^)]*anonKey[^:]*:\s*{QUOTED}", re.S),
    re.compile(rf"createClient\s*\([^)]*anonKey[^:]*:\s*{QUOTED}[^)]*url[^:]*:\s*{QUOTED}", re.S),
]

PAIRED_PATTERNS = [
    ("array", re.compile(
        rf"\[[\"'](https?://{BACKEND_DOMAIN})[\"']\s*,\s*[\"']({JWT_SHAPE})[\"']\]"
    )),
    ("object", re.compile(
        rf"url\s*:\s*[\"'](https?://{BACKEND_DOMAIN})[\"'][^}}]*key\s*:\s*[\"']({JWT_SHAPE})[\"']"
    )),
    ("adjacent", re.compile(
        rf"[\"'](https?://{BACKEND_DOMAIN})[\"'][^\"']*[\"']({JWT_SHAPE})[\"']"
    )),
]

DOMAIN_URL_PATTERN = re.compile(rf"https?://{BACKEND_DOMAIN}")
JWT_PATTERN = re.compile(JWT_SHAPE)
PUBLISHABLE_PATTERN = re.compile(r"sb_publishable_[A-Za-z0-9_-]{10,}")


@dataclass(frozen=True)
class Match:
    """A single extracted value and the pattern that produced it."""

    field: str
    value: str
    source: str


Extractor = Callable[[str], list[Match]]


def is_backend_url(url: str | None) -> bool:
    if not url:
        return False
    return any(p.search(url) for p in BACKEND_URL_PATTERNS)


def extract_project_url(url: str | None) -> str | None:
    """Reduce a backend URL to its project endpoint."""
    if not url:
        return None
    match = PROJECT_URL_PATTERN.search(url)
    if match:
        return match.group(1)
    match = GATEWAY_PREFIX_PATTERN.search(url)
    if match:
        return match.group(1)
    return None


def _clean(value: str) -> str:
    return value.strip().strip("'\"").strip()


def classify(value: str, source: str) -> Match | None:
    """Turn a raw literal into an endpoint or credential match, if it is one."""
    value = _clean(value)
    if is_backend_url(value):
        endpoint = extract_project_url(value) or value
        return Match(ENDPOINT, endpoint.rstrip("/"), source)
    if has_known_prefix(value):
        return Match(CREDENTIAL, value, source)
    return None


def normalize_origin(origin_url: str) -> str:
    """Prepend ``https://`` when missing and validate the origin URL."""
    url = (origin_url or "").strip()
    if not url:
        raise InputValidationError("Please enter a frontend URL to analyze")
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InputValidationError(f"Invalid frontend URL format: {origin_url}")
    return url


# ============================================================================
# Literal extractors (step 2)
# ============================================================================


def match_env_assignments(text: str) -> list[Match]:
    """Environment-variable style assignments such as ``VITE_SUPABASE_URL="..."``."""
    matches: list[Match] = []
    for name in ENV_URL_NAMES + ENV_KEY_NAMES:
        pattern = re.compile(rf"{name}['\"]?\s*[=:]\s*{QUOTED}", re.I)
        found = pattern.search(text)
        if found:
            match = classify(found.group(1), f"env_assignment:{name}")
            if match:
                matches.append(match)

    # dotenv style, unquoted
    found = re.search(r"SUPABASE_URL\s*=\s*([^\s;'\"]+)", text, re.I)
    if found:
        match = classify(found.group(1), "env_assignment:SUPABASE_URL")
        if match:
            matches.append(match)
    return matches


def match_constructor_calls(text: str) -> list[Match]:
    """``createClient(...)`` calls in positional or keyword form."""
    matches: list[Match] = []
    for index, pattern in enumerate(CONSTRUCTOR_PATTERNS):
        found = pattern.search(text)
        if not found:
            continue
        for group in found.groups():
            match = classify(group or "", f"constructor_call:{index}")
            if match:
                matches.append(match)
    return matches


def match_paired_literals(text: str) -> list[Match]:
    """Endpoint and token literals sitting next to each other in bundles."""
    matches: list[Match] = []
    for form, pattern in PAIRED_PATTERNS:
        found = pattern.search(text)
        if found:
            matches.append(Match(ENDPOINT, found.group(1).rstrip("/"), f"paired_literal:{form}"))
            matches.append(Match(CREDENTIAL, found.group(2), f"paired_literal:{form}"))
    return matches


def match_domain_urls(text: str) -> list[Match]:
    found = DOMAIN_URL_PATTERN.search(text)
    if not found:
        return []
    return [Match(ENDPOINT, found.group(0).rstrip("/"), f"domain_url:{found.group(0)}")]


def match_publishable_keys(text: str) -> list[Match]:
    found = PUBLISHABLE_PATTERN.search(text)
    if not found:
        return []
    return [Match(CREDENTIAL, found.group(0), "publishable_key_literal")]


def match_token_shape(text: str) -> list[Match]:
    """Longest three-segment JWT-shaped literal, if any qualifies."""
    candidates = [t for t in JWT_PATTERN.findall(text) if len(t) > MIN_JWT_LENGTH]
    if not candidates:
        return []
    return [Match(CREDENTIAL, max(candidates, key=len), "jwt_shaped_literal")]


LITERAL_EXTRACTORS: list[Extractor] = [
    match_env_assignments,
    match_constructor_calls,
    match_paired_literals,
    match_domain_urls,
    match_publishable_keys,
    match_token_shape,
]


def scan_text(text: str) -> list[Match]:
    """Run every literal extractor in order and concatenate their matches."""
    matches: list[Match] = []
    for extractor in LITERAL_EXTRACTORS:
        matches.extend(extractor(text))
    return matches


# ============================================================================
# Static references (step 1)
# ============================================================================


def scan_document(html: str) -> tuple[list[Match], list[str]]:
    """Scan parsed HTML for backend references.

    Returns:
        Tuple of (matches, detection notes). Detection notes record patterns
        that prove the backend is in use without yielding a value.
    """
    soup = BeautifulSoup(html, "lxml")
    matches: list[Match] = []
    detections: list[str] = []

    for tag_name, attr in (("script", "src"), ("link", "href")):
        for tag in soup.find_all(tag_name, attrs={attr: True}):
            value = tag.get(attr)
            if is_backend_url(value):
                endpoint = extract_project_url(value)
                if endpoint:
                    matches.append(Match(ENDPOINT, endpoint, f"{tag_name}_{attr}:{value}"))
                else:
                    detections.append(f"{tag_name}_{attr}:{value}")

    for script in soup.find_all("script"):
        content = script.string or script.get_text() or ""
        if not content:
            continue

        if not script.get("src"):
            for name in GLOBAL_NAMES:
                found = re.search(rf"{name}\s*[=:]\s*{QUOTED}", content, re.I)
                if found:
                    match = classify(found.group(1), f"global_variable:{name}")
                    if match:
                        matches.append(match)
                    else:
                        detections.append(f"global_variable:{name}")
            for pattern in INLINE_SCRIPT_PATTERNS:
                if pattern.search(content):
                    detections.append(f"script_pattern:{pattern.pattern}")

        if len(content) > BUNDLE_SCAN_MIN_LENGTH:
            for pattern in BUNDLE_PATTERNS:
                if pattern.search(content):
                    detections.append(f"bundle_pattern:{pattern.pattern}")

    for pattern in TEXT_PATTERNS:
        if pattern.search(html):
            detections.append(f"text_content:{pattern.pattern}")

    return matches, detections


def linked_script_urls(html: str, base_url: str, limit: int) -> list[str]:
    """Absolute URLs of script assets worth fetching, in document order."""
    soup = BeautifulSoup(html, "lxml")
    urls: list[str] = []
    for script in soup.find_all("script", attrs={"src": True}):
        src = script.get("src", "")
        absolute = urljoin(base_url, src)
        if src.endswith(".js") or ".js?" in src or is_backend_url(absolute):
            if absolute not in urls:
                urls.append(absolute)
    return urls[:limit]


# ============================================================================
# Merging
# ============================================================================


def merge_matches(
    result: DiscoveryResult,
    matches: list[Match],
    detections: list[str] | tuple[str, ...] = (),
) -> DiscoveryResult:
    """Fold matches into a result, first match per field wins."""
    endpoint = result.endpoint
    credential = result.credential
    provenance = list(result.provenance)
    provenance.extend(detections)

    for match in matches:
        provenance.append(match.source)
        if match.field == ENDPOINT and endpoint is None:
            endpoint = match.value
        elif match.field == CREDENTIAL and credential is None:
            credential = match.value

    return result.model_copy(update={
        "endpoint": endpoint,
        "credential": credential,
        "detected": result.detected or bool(matches) or bool(detections),
        "provenance": tuple(provenance),
    })


def analyze_content(html: str, origin: str) -> DiscoveryResult:
    """Run the static-reference and literal scans over fetched page content."""
    static_matches, detections = scan_document(html)
    literal_matches = scan_text(html)
    return merge_matches(
        DiscoveryResult(origin=origin),
        static_matches + literal_matches,
        detections,
    )


# ============================================================================
# Fetching
# ============================================================================


@dataclass(frozen=True)
class FetchStrategy:
    """One way of retrieving a URL's content."""

    name: str
    template: str | None
    timeout: float
    min_length: int = 0

    def build_url(self, target: str) -> str:
        if self.template is None:
            return target
        return self.template.format(url=quote(target, safe=""))


def build_strategies(settings: Settings) -> list[FetchStrategy]:
    """Relays in configured order, then a direct request."""
    strategies = [
        FetchStrategy(
            name=f"relay:{urlparse(template).netloc}",
            template=template,
            timeout=settings.discovery_relay_timeout_seconds,
            min_length=MIN_RELAY_CONTENT_LENGTH,
        )
        for template in settings.discovery_relays
    ]
    strategies.append(FetchStrategy(
        name="direct",
        template=None,
        timeout=settings.discovery_direct_timeout_seconds,
    ))
    return strategies


class CredentialDiscovery:
    """Recovers a project endpoint and public credential from a web origin.

    Holds configuration and an optional shared HTTP client only; every call
    to ``discover`` returns an independent result.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.strategies = build_strategies(self.settings)
        self._client = client

    async def discover(self, origin_url: str) -> DiscoveryResult:
        """Run the discovery pipeline against a front-end origin.

        Raises:
            InputValidationError: If the origin URL is malformed.
            NetworkError: If every fetch strategy failed for the page itself.
        """
        origin = normalize_origin(origin_url)
        if self._client is not None:
            return await self._discover(self._client, origin)

        async with httpx.AsyncClient(
            headers={"User-Agent": self.settings.user_agent},
            follow_redirects=True,
        ) as client:
            return await self._discover(client, origin)

    async def _discover(self, client: httpx.AsyncClient, origin: str) -> DiscoveryResult:
        logger.info(f"Discovering backend credentials from {origin}")
        html = await self.fetch_content(client, origin)
        result = analyze_content(html, origin)

        if result.detected and not result.complete:
            result = await self._escalate(client, html, result)

        logger.info(
            f"Discovery finished for {origin}: detected={result.detected} "
            f"endpoint={'yes' if result.endpoint else 'no'} "
            f"credential={'yes' if result.credential else 'no'}"
        )
        return result

    async def _escalate(
        self,
        client: httpx.AsyncClient,
        html: str,
        result: DiscoveryResult,
    ) -> DiscoveryResult:
        """Scan linked script assets until both fields are known."""
        assets = linked_script_urls(html, result.origin, self.settings.discovery_max_script_assets)
        for asset_url in assets:
            try:
                content = await self.fetch_content(client, asset_url)
            except NetworkError as e:
                logger.debug(f"Skipping script asset {asset_url}: {e.message}")
                continue

            result = merge_matches(result, scan_text(content))
            if result.complete:
                result = merge_matches(result, [], [f"script_asset:{asset_url}"])
                break
        return result

    async def fetch_content(self, client: httpx.AsyncClient, url: str) -> str:
        """Fetch a URL through the strategy chain.

        Each strategy gets its own timeout; a strategy is abandoned on
        timeout, transport error or non-success status.

        Raises:
            NetworkError: Once every strategy is exhausted.
        """
        last_error = "no fetch strategy configured"
        for strategy in self.strategies:
            try:
                response = await client.get(
                    strategy.build_url(url),
                    timeout=strategy.timeout,
                    headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"},
                )
            except httpx.TimeoutException:
                last_error = f"{strategy.name}: timed out"
                logger.debug(f"Fetch via {strategy.name} timed out for {url}")
                continue
            except httpx.HTTPError as e:
                last_error = f"{strategy.name}: {e}"
                logger.debug(f"Fetch via {strategy.name} failed for {url}: {e}")
                continue

            text = response.text or ""
            if response.is_success and text and len(text) > strategy.min_length:
                return text
            last_error = f"{strategy.name}: HTTP {response.status_code}"

        raise NetworkError(f"Could not fetch page content for {url} ({last_error})")
