"""Bearer credential decoding.

Decodes the public API key handed to the auditor. JWT-shaped keys are split
into their three segments and the header and payload are base64 then JSON
decoded; no signature verification is attempted. Opaque publishable keys
(``sb_publishable_...``) carry no claims and are accepted as-is.
"""

import base64
import binascii
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from rls_auditor.models.audit import Credential
from rls_auditor.services.exceptions import DecodeError, InvalidCredential

logger = logging.getLogger(__name__)

JWT_PREFIX = "eyJ"
PUBLISHABLE_PREFIX = "sb_publishable_"
KEY_PREFIXES = (JWT_PREFIX, PUBLISHABLE_PREFIX)

PROJECT_REF_PATTERN = re.compile(r"https://([^.]+)\.supabase\.co")

DEFAULT_ROLE = "anon"
SEGMENT_NAMES = ("header", "payload", "signature")


def is_publishable_key(token: str) -> bool:
    return token.startswith(PUBLISHABLE_PREFIX)


def has_known_prefix(token: str) -> bool:
    """Check the literal against the backend's public-key formats."""
    return token.startswith(KEY_PREFIXES)


def _b64decode_segment(segment: str) -> bytes:
    # JWTs use unpadded base64url; tolerate standard alphabet too.
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))


def _decode_segment(segment: str, name: str) -> dict[str, Any]:
    try:
        raw = _b64decode_segment(segment)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 in {name} segment: {e}", segment=name) from e

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Invalid JSON in {name} segment: {e}", segment=name) from e

    if not isinstance(data, dict):
        raise DecodeError(f"The {name} segment is not a JSON object", segment=name)
    return data


def _claim_text(value: Any) -> str | None:
    """String form of a scalar claim; None for missing, empty or structured values."""
    if value is None or value == "" or isinstance(value, (dict, list)):
        return None
    return str(value)


def decode_or_raise(token: str, now: datetime | None = None) -> Credential:
    """Decode a JWT credential, raising on structural problems.

    Args:
        token: The bearer token literal.
        now: Reference time for the expiry check (defaults to current UTC).

    Returns:
        A valid Credential.

    Raises:
        InvalidCredential: If the token does not have exactly three segments.
        DecodeError: If the header or payload segment cannot be decoded.
    """
    token = token.strip()
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidCredential(
            f"Invalid JWT format: expected 3 segments, got {len(parts)}"
        )

    header = _decode_segment(parts[0], SEGMENT_NAMES[0])
    payload = _decode_segment(parts[1], SEGMENT_NAMES[1])

    issuer = _claim_text(payload.get("iss"))
    role = _claim_text(payload.get("role")) or DEFAULT_ROLE

    project_ref = None
    if issuer:
        match = PROJECT_REF_PATTERN.search(issuer)
        if match:
            project_ref = match.group(1)

    expires_at = None
    is_expired = False
    exp = payload.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        try:
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Ignoring out-of-range exp claim: {exp}")
        else:
            is_expired = expires_at < (now or datetime.now(timezone.utc))

    return Credential(
        token=token,
        kind="jwt",
        valid=True,
        role=role,
        issuer=issuer,
        project_ref=project_ref,
        expires_at=expires_at,
        is_expired=is_expired,
        header=header,
        payload=payload,
    )


def decode(token: str, now: datetime | None = None) -> Credential:
    """Decode a JWT credential without raising.

    Malformed tokens yield ``valid=False`` with a non-empty ``error``.
    """
    token = (token or "").strip()
    try:
        return decode_or_raise(token, now=now)
    except DecodeError as e:
        return Credential(token=token, kind="jwt", valid=False, error=e.message)
    except ValidationError as e:
        logger.debug(f"Decoded claims rejected: {e}")
        return Credential(
            token=token, kind="jwt", valid=False, error=f"Unsupported claim values ({e.error_count()} invalid)",
        )


def publishable_credential(token: str) -> Credential:
    """Wrap an opaque publishable key, which has no claims to decode."""
    return Credential(token=token.strip(), kind="publishable", valid=True, role=DEFAULT_ROLE)


def load_credential(token: str, now: datetime | None = None) -> Credential:
    """Decode any supported key format, raising on malformed JWTs."""
    if is_publishable_key(token.strip()):
        return publishable_credential(token)
    return decode_or_raise(token, now=now)
