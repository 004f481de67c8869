"""Audit orchestration.

Runs one audit end to end: validate inputs (or discover them from a
front-end origin), decode the credential, fetch and parse the API
description, probe every entity, then score. Ingestion failures raise an
``AuditError`` subclass and no report is produced.
"""

import asyncio
import logging
from datetime import datetime
from urllib.parse import urlparse

import httpx

from rls_auditor.config import Settings, get_settings
from rls_auditor.models.audit import DiscoveryResult, Report, mask_token
from rls_auditor.services import catalog_parser, credential_decoder, risk_engine
from rls_auditor.services.access_prober import AccessProber
from rls_auditor.services.credential_discovery import CredentialDiscovery
from rls_auditor.services.exceptions import (
    InputValidationError,
    NetworkError,
    NotFoundError,
    PartialDiscoveryError,
)

logger = logging.getLogger(__name__)


def validate_project_url(project_url: str | None) -> str:
    """Check the endpoint uses https and strip trailing slashes."""
    url = (project_url or "").strip()
    if not url:
        raise InputValidationError("Please enter your project URL")
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise InputValidationError("Project URL must use HTTPS")
    return url.rstrip("/")


def validate_api_key(api_key: str | None) -> str:
    key = (api_key or "").strip()
    if not key:
        raise InputValidationError("Please enter your anon key")
    if not credential_decoder.has_known_prefix(key):
        raise InputValidationError(
            "Invalid key format. Key should start with 'eyJ' (JWT) or 'sb_publishable_'"
        )
    return key


def validate_inputs(project_url: str | None, api_key: str | None) -> tuple[str, str]:
    """Validate manual credentials.

    Returns:
        Tuple of (normalised endpoint, stripped key).

    Raises:
        InputValidationError: If either value is missing or malformed.
    """
    return validate_project_url(project_url), validate_api_key(api_key)


def require_complete(result: DiscoveryResult) -> tuple[str, str]:
    """Turn a discovery result into credentials or raise the matching error."""
    if result.complete:
        return result.endpoint, result.credential
    if result.partial:
        missing = "anon key" if result.endpoint else "project URL"
        raise PartialDiscoveryError(
            f"Found only part of the backend configuration on {result.origin}; "
            f"please provide the {missing} manually",
            result,
        )
    if result.detected:
        raise NotFoundError(
            f"Backend usage detected on {result.origin} but no credentials could be extracted"
        )
    raise NotFoundError(f"No backend configuration found on {result.origin}")


async def _audit(
    project_url: str | None,
    api_key: str | None,
    frontend_url: str | None,
    settings: Settings,
    client: httpx.AsyncClient | None,
    now: datetime | None,
) -> Report:
    if not (project_url or api_key) and frontend_url:
        discovery = CredentialDiscovery(settings=settings, client=client)
        result = await discovery.discover(frontend_url)
        project_url, api_key = require_complete(result)

    endpoint, key = validate_inputs(project_url, api_key)
    credential = credential_decoder.load_credential(key, now=now)
    logger.info(f"Starting audit of {endpoint} with {credential.kind} key {mask_token(key)}")

    async with AccessProber(endpoint, credential, settings=settings, client=client) as prober:
        document = await prober.fetch_catalog_document()
        catalog = catalog_parser.parse(document)
        if catalog.is_empty:
            logger.warning(
                f"No tables or functions found at {endpoint}; the key may be invalid "
                "or no tables are exposed to it"
            )
        probe_results = await prober.probe(catalog)

    return risk_engine.score(
        catalog,
        probe_results,
        credential=credential,
        large_table_threshold=settings.large_table_threshold,
        now=now,
    )


async def run_audit(
    project_url: str | None = None,
    api_key: str | None = None,
    frontend_url: str | None = None,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> Report:
    """Run a complete audit and return its report.

    Either ``project_url`` and ``api_key`` or ``frontend_url`` must be given.
    With only a front-end URL the endpoint and key are discovered first.

    Args:
        project_url: Project endpoint (https).
        api_key: Public credential (JWT or publishable key).
        frontend_url: Front-end origin used for discovery.
        settings: Settings override, mainly for tests.
        client: Shared HTTP client, mainly for tests.
        now: Reference time for expiry checks and the report timestamp.

    Returns:
        The immutable Report.

    Raises:
        InputValidationError: On malformed inputs.
        PartialDiscoveryError: If discovery found only one of endpoint and key.
        NotFoundError: If discovery found nothing or the API description is absent.
        AuthError: If the backend rejects the key.
        DecodeError: If a JWT-shaped key cannot be decoded.
        NetworkError: On unreachable backend or audit timeout.
    """
    settings = settings or get_settings()
    target = project_url or frontend_url

    try:
        return await asyncio.wait_for(
            _audit(project_url, api_key, frontend_url, settings, client, now),
            timeout=settings.audit_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise NetworkError(
            f"Audit of {target} did not finish within {settings.audit_timeout_seconds:g}s"
        ) from e
