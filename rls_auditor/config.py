"""Configuration settings for the RLS Auditor API.

All settings are loaded from environment variables (or a ``.env`` file) using
pydantic-settings. The ``get_settings()`` function returns a cached singleton
instance.

Environment variables are case-insensitive and extra variables are silently
ignored.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        api_host: Bind address for the API server.
        api_port: Bind port for the API server.
        api_log_level: Logging level (debug, info, warning, error, critical).
        probe_timeout_seconds: Timeout applied to every single network call
            made against the audited backend.
        entity_timeout_seconds: Upper bound for all sub-probes of one table,
            function or bucket. An entity exceeding it is recorded with
            unknown fields instead of failing the audit.
        audit_timeout_seconds: Maximum time for a whole audit run.
        max_concurrency: Size of the bounded probe worker pool.
        discovery_relays: Ordered relay URL templates tried before a direct
            fetch when discovering credentials. ``{url}`` is replaced with the
            percent-encoded target URL.
        discovery_relay_timeout_seconds: Timeout for each relay attempt.
        discovery_direct_timeout_seconds: Timeout for the direct attempt.
        discovery_max_script_assets: Maximum number of linked script assets
            fetched during discovery escalation.
        large_table_threshold: Row count above which a readable table is
            reported as a large exposure.
        user_agent: User-Agent header sent with every request.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_log_level: str = "info"

    # Probing
    probe_timeout_seconds: float = 10.0
    entity_timeout_seconds: float = 30.0
    audit_timeout_seconds: float = 300.0
    max_concurrency: int = 8

    # Discovery
    discovery_relays: list[str] = [
        "https://api.allorigins.win/raw?url={url}",
        "https://corsproxy.io/?{url}",
        "https://api.codetabs.com/v1/proxy?quest={url}",
    ]
    discovery_relay_timeout_seconds: float = 15.0
    discovery_direct_timeout_seconds: float = 10.0
    discovery_max_script_assets: int = 10

    # Scoring
    large_table_threshold: int = 10_000

    user_agent: str = "rls-auditor/0.1.0"

    def rest_url(self, endpoint: str) -> str:
        """Build the REST gateway base URL for a project endpoint."""
        return f"{endpoint.rstrip('/')}/rest/v1"

    def storage_url(self, endpoint: str) -> str:
        """Build the object storage base URL for a project endpoint."""
        return f"{endpoint.rstrip('/')}/storage/v1"


@lru_cache
def get_settings() -> Settings:
    """Get or create the cached application settings singleton.

    Returns:
        Cached Settings instance.
    """
    return Settings()
