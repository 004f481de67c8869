"""Audits router."""

import logging

from fastapi import APIRouter, HTTPException

from rls_auditor.models.schemas import AuditRequest, DecodeRequest, DiscoveryRequest
from rls_auditor.services import credential_decoder
from rls_auditor.services.audit_orchestrator import run_audit
from rls_auditor.services.credential_discovery import CredentialDiscovery
from rls_auditor.services.exceptions import AuditError
from rls_auditor.services.risk_engine import report_to_dict

router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "input_validation": 422,
    "decode": 422,
    "auth": 401,
    "not_found": 404,
    "partial_discovery": 409,
    "network": 502,
}


def to_http_exception(error: AuditError) -> HTTPException:
    """Map an ingestion failure to a single categorised HTTP error."""
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.category, 500),
        detail=error.to_dict(),
    )


@router.post("/audits")
async def create_audit(request: AuditRequest):
    """Run an audit and return the exposure report."""
    try:
        report = await run_audit(
            project_url=request.project_url,
            api_key=request.api_key,
            frontend_url=request.frontend_url,
        )
    except AuditError as e:
        logger.warning(f"Audit failed ({e.category}): {e.message}")
        raise to_http_exception(e) from e

    return report_to_dict(report)


@router.post("/discovery")
async def discover_credentials(request: DiscoveryRequest):
    """Discover the backend endpoint and public key used by a front-end."""
    try:
        result = await CredentialDiscovery().discover(request.frontend_url)
    except AuditError as e:
        logger.warning(f"Discovery failed ({e.category}): {e.message}")
        raise to_http_exception(e) from e

    return result.model_dump(mode="json", by_alias=True)


@router.post("/credentials/decode")
async def decode_credential(request: DecodeRequest):
    """Decode a public key and return its claims. Never fails on bad tokens."""
    key = request.api_key.strip()
    if credential_decoder.is_publishable_key(key):
        credential = credential_decoder.publishable_credential(key)
    else:
        credential = credential_decoder.decode(key)
    return credential.model_dump(mode="json", by_alias=True)
