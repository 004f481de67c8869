"""
Shared fixtures for the RLS Auditor tests.
"""

import base64
import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from rls_auditor.config import Settings

PROJECT_URL = "https://abcdefghijklmnop.supabase.co"


def _b64url(data: dict[str, Any]) -> str:
    raw = json.dumps(data).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def build_jwt(payload: dict[str, Any], header: dict[str, Any] | None = None) -> str:
    """Build an unsigned JWT-shaped token with the given claims."""
    header = header or {"alg": "HS256", "typ": "JWT"}
    return f"{_b64url(header)}.{_b64url(payload)}.c2lnbmF0dXJl"


def build_spec(
    tables: dict[str, list[str]] | None = None,
    functions: list[str] | None = None,
) -> dict[str, Any]:
    """Build a minimal Swagger 2 document as served by PostgREST."""
    paths: dict[str, Any] = {"/": {"get": {"summary": "OpenAPI description"}}}
    definitions: dict[str, Any] = {}

    for name, columns in (tables or {}).items():
        paths[f"/{name}"] = {
            "get": {
                "parameters": [
                    {"name": col, "in": "query", "type": "string"} for col in columns
                ] + [{"name": "select", "in": "query", "type": "string"}],
            },
            "post": {},
            "patch": {},
            "delete": {},
        }
        definitions[name] = {
            "required": [columns[0]] if columns else [],
            "properties": {col: {"type": "string"} for col in columns},
        }

    for name in functions or []:
        paths[f"/rpc/{name}"] = {
            "post": {
                "parameters": [{
                    "name": "args",
                    "in": "body",
                    "schema": {
                        "type": "object",
                        "required": ["id"],
                        "properties": {"id": {"type": "integer", "format": "bigint"}},
                    },
                }],
                "responses": {"200": {"schema": {"type": "boolean"}}},
            },
        }

    return {"swagger": "2.0", "paths": paths, "definitions": definitions}


@pytest.fixture
def make_jwt():
    """Factory fixture for JWT-shaped tokens."""
    return build_jwt


@pytest.fixture
def make_spec():
    """Factory fixture for API description documents."""
    return build_spec


@pytest.fixture
def anon_key() -> str:
    return build_jwt({
        "iss": "https://abcdefghijklmnop.supabase.co/auth/v1",
        "role": "anon",
        "exp": 4102444800,
    })


@pytest.fixture
def project_url() -> str:
    return PROJECT_URL


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts and no discovery relays."""
    return Settings(
        probe_timeout_seconds=1.0,
        entity_timeout_seconds=2.0,
        audit_timeout_seconds=10.0,
        max_concurrency=4,
        discovery_relays=[],
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    from rls_auditor.main import app

    with TestClient(app) as test_client:
        yield test_client
