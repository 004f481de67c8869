"""Immutable domain models for catalog, probe results and the exposure report.

Every model is a frozen pydantic model serialised with camelCase aliases so
that ``report.model_dump(by_alias=True)`` yields the JSON shape consumed by
presentation layers (``totalTables``, ``riskScore``, ``rowCount``, ...).
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel


class Permission(str, Enum):
    """Tri-state write permission inferred from a probe."""

    ALLOWED = "allowed"
    DENIED = "denied"
    UNKNOWN = "unknown"

    @classmethod
    def from_bool(cls, value: bool) -> "Permission":
        return cls.ALLOWED if value else cls.DENIED

    def resolve(self, new: "Permission") -> "Permission":
        """Return ``new`` only while this permission is still undetermined."""
        if self is Permission.UNKNOWN:
            return new
        return self


class TriState(str, Enum):
    """Tri-state boolean used where "not determined" must stay distinct."""

    TRUE = "true"
    FALSE = "false"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """Issue severity, ordered from most to least severe."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class CheckStatus(str, Enum):
    """Status of a checklist item."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    INFO = "info"


class AuditModel(BaseModel):
    """Base for all immutable audit values."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ============================================================================
# Credential
# ============================================================================


class Credential(AuditModel):
    """Decoded bearer credential.

    ``kind`` is ``"jwt"`` for three-segment tokens and ``"publishable"`` for
    opaque ``sb_publishable_`` keys, which carry no claims.
    """

    token: str = Field(exclude=True, repr=False)
    kind: str = "jwt"
    valid: bool = False
    role: str | None = None
    issuer: str | None = None
    project_ref: str | None = None
    expires_at: datetime | None = None
    is_expired: bool = False
    header: dict[str, Any] | None = None
    payload: dict[str, Any] | None = None
    error: str | None = None

    @computed_field(alias="maskedToken")
    @property
    def masked_token(self) -> str:
        return mask_token(self.token)


def mask_token(token: str, visible_chars: int = 6) -> str:
    """Mask a credential for logs and reports."""
    if len(token) <= visible_chars * 2:
        return "*" * len(token)
    return f"{token[:visible_chars]}{'*' * 8}{token[-visible_chars:]}"


# ============================================================================
# Catalog
# ============================================================================


class Column(AuditModel):
    """A table column declared in the API description."""

    name: str
    type: str = "unknown"
    format: str | None = None
    required: bool = False
    description: str = ""


class TableSchema(AuditModel):
    """A table or view exposed through the gateway."""

    name: str
    columns: tuple[Column, ...] = ()
    operations: tuple[str, ...] = ()
    description: str = ""


class FunctionParameter(AuditModel):
    """A named argument of an RPC function."""

    name: str
    type: str = "any"
    format: str | None = None
    required: bool = False
    description: str = ""


class RpcFunction(AuditModel):
    """A database function exposed under the ``/rpc/`` prefix."""

    name: str
    parameters: tuple[FunctionParameter, ...] = ()
    return_type: str = "json"
    description: str = ""


class Catalog(AuditModel):
    """Normalised set of tables and RPC functions. Names are unique."""

    tables: tuple[TableSchema, ...] = ()
    functions: tuple[RpcFunction, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.tables and not self.functions

    def table(self, name: str) -> TableSchema | None:
        return next((t for t in self.tables if t.name == name), None)

    def function(self, name: str) -> RpcFunction | None:
        return next((f for f in self.functions if f.name == name), None)


# ============================================================================
# Probe results
# ============================================================================


class AccessResult(AuditModel):
    """Inferred CRUD access for one table."""

    select: bool = False
    insert: Permission = Permission.UNKNOWN
    update: Permission = Permission.UNKNOWN
    delete: Permission = Permission.UNKNOWN
    row_count: int | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _row_count_requires_select(self) -> "AccessResult":
        if self.row_count is not None and not self.select:
            raise ValueError("row_count can only be set when select is allowed")
        return self

    @property
    def has_write_access(self) -> bool:
        return Permission.ALLOWED in (self.insert, self.update, self.delete)

    def with_permissions(
        self,
        insert: Permission,
        update: Permission,
        delete: Permission,
    ) -> "AccessResult":
        """Return a copy where only still-unknown permissions are replaced."""
        return self.model_copy(update={
            "insert": self.insert.resolve(insert),
            "update": self.update.resolve(update),
            "delete": self.delete.resolve(delete),
        })


class FunctionAccessResult(AuditModel):
    """Outcome of invoking an RPC function with an empty payload."""

    accessible: bool = False
    requires_auth: TriState = TriState.UNKNOWN
    http_status: int | None = None
    error: str | None = None


class BucketAccessResult(AuditModel):
    """Listability and public readability of a storage bucket."""

    can_list: bool = False
    is_public: bool = False
    file_count: int | None = None
    error: str | None = None


class Bucket(AuditModel):
    """Storage bucket metadata as returned by the bucket listing."""

    id: str
    name: str
    public: bool = False


class BucketReport(Bucket):
    """Bucket metadata joined with its probe result."""

    access: BucketAccessResult = BucketAccessResult()


class ProbeResults(AuditModel):
    """Joined output of all entity probes for one audit."""

    tables: dict[str, AccessResult] = {}
    functions: dict[str, FunctionAccessResult] = {}
    buckets: tuple[BucketReport, ...] = ()
    rls_policies: list[dict[str, Any]] | None = None


# ============================================================================
# Report
# ============================================================================


class Issue(AuditModel):
    """A single prioritised finding."""

    severity: Severity
    type: str
    subject: str | None = None
    message: str
    recommendation: str = ""


class SeverityBreakdown(AuditModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0


class RiskScore(AuditModel):
    """Numeric score in [0, 100] with its derived risk level."""

    score: int = 0
    risk_level: Severity = Severity.LOW
    breakdown: SeverityBreakdown = SeverityBreakdown()


class ChecklistItem(AuditModel):
    id: str
    title: str
    description: str
    status: CheckStatus
    details: str


class Remediation(AuditModel):
    title: str
    description: str
    severity: str
    code: str
    language: str = "sql"


class TableRowCount(AuditModel):
    name: str
    row_count: int


class SensitiveTable(AuditModel):
    name: str
    sensitive_columns: tuple[str, ...]


class WriteAccessTable(AuditModel):
    name: str
    can_insert: bool
    can_update: bool
    can_delete: bool


class DataExposure(AuditModel):
    """Aggregate view of how much data a public credential can reach."""

    total_tables: int = 0
    total_rows: int = 0
    total_columns: int = 0
    tables_with_row_count: int = 0
    largest_tables: tuple[TableRowCount, ...] = ()
    sensitive_data_tables: tuple[SensitiveTable, ...] = ()
    write_access_tables: tuple[WriteAccessTable, ...] = ()


class TableReport(AuditModel):
    table: TableSchema = Field(alias="schema")
    access: AccessResult = AccessResult()
    sensitive_columns: tuple[str, ...] = ()


class FunctionReport(AuditModel):
    function: RpcFunction = Field(alias="schema")
    test_results: FunctionAccessResult = FunctionAccessResult()


class ReportSummary(AuditModel):
    total_tables: int = 0
    total_functions: int = 0
    total_issues: int = 0
    total_public_records: int = 0
    risk_score: RiskScore = RiskScore()


class Report(AuditModel):
    """Aggregate root produced once per audit run."""

    summary: ReportSummary = ReportSummary()
    tables: tuple[TableReport, ...] = ()
    functions: tuple[FunctionReport, ...] = ()
    buckets: tuple[BucketReport, ...] = ()
    issues: tuple[Issue, ...] = ()
    checklist: tuple[ChecklistItem, ...] = ()
    remediations: tuple[Remediation, ...] = ()
    data_exposure: DataExposure = DataExposure()
    credential_info: Credential | None = None
    rls_policies: list[dict[str, Any]] | None = None
    mode: str = "anonymous"
    generated_at: datetime


# ============================================================================
# Discovery
# ============================================================================


class DiscoveryResult(AuditModel):
    """Endpoint and credential recovered from a front-end origin.

    ``provenance`` lists every pattern that matched, in pipeline order, even
    when nothing usable was extracted.
    """

    origin: str
    endpoint: str | None = None
    credential: str | None = Field(default=None, repr=False)
    detected: bool = False
    provenance: tuple[str, ...] = ()

    @computed_field
    @property
    def complete(self) -> bool:
        return self.endpoint is not None and self.credential is not None

    @computed_field
    @property
    def partial(self) -> bool:
        return (self.endpoint is None) != (self.credential is None)
