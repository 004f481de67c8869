"""Risk scoring for probe results.

Turns a catalog and its probe results into the prioritised issue list, the
numeric risk score, the configuration checklist, generated SQL remediation
and the data exposure aggregate. Every function here is pure; ``score``
never raises and missing probe data only produces fewer issues.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from rls_auditor.models.audit import (
    AccessResult,
    BucketReport,
    Catalog,
    CheckStatus,
    ChecklistItem,
    Credential,
    DataExposure,
    FunctionAccessResult,
    FunctionReport,
    Issue,
    Permission,
    ProbeResults,
    Remediation,
    Report,
    ReportSummary,
    RiskScore,
    RpcFunction,
    SensitiveTable,
    Severity,
    SeverityBreakdown,
    TableReport,
    TableRowCount,
    TableSchema,
    TriState,
    WriteAccessTable,
)

logger = logging.getLogger(__name__)

SENSITIVE_COLUMN_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"password",
        r"passwd",
        r"secret",
        r"token",
        r"api_?key",
        r"apikey",
        r"private_?key",
        r"access_?key",
        r"auth_?key",
        r"ssn",
        r"social_?security",
        r"credit_?card",
        r"card_?number",
        r"cvv",
        r"cvc",
        r"pin",
        r"encryption_?key",
        r"salt",
        r"hash",
        r"credential",
    )
]

SENSITIVE_FUNCTION_PATTERNS = [
    re.compile(verb, re.IGNORECASE)
    for verb in ("delete", "drop", "truncate", "admin", "update", "insert", "create")
]

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
}
MAX_SCORE = 100

LARGE_TABLE_THRESHOLD = 10_000
MANY_TABLES_THRESHOLD = 20
MANY_FUNCTIONS_THRESHOLD = 10
LARGEST_TABLES_LIMIT = 5

WRITE_ISSUE_TYPES = ("unrestricted_insert", "unrestricted_update", "unrestricted_delete")


# ============================================================================
# Per-entity analysis
# ============================================================================


def detect_sensitive_columns(table: TableSchema) -> list[str]:
    """Column names matching a credential or PII-like pattern, in column order."""
    return [
        column.name
        for column in table.columns
        if any(pattern.search(column.name) for pattern in SENSITIVE_COLUMN_PATTERNS)
    ]


def analyze_table(
    table: TableSchema,
    access: AccessResult | None,
    large_table_threshold: int = LARGE_TABLE_THRESHOLD,
) -> list[Issue]:
    issues: list[Issue] = []
    name = table.name

    sensitive = detect_sensitive_columns(table)
    if sensitive:
        issues.append(Issue(
            severity=Severity.MEDIUM,
            type="sensitive_columns",
            subject=name,
            message=f'Table "{name}" exposes potentially sensitive columns: {", ".join(sensitive)}',
            recommendation="Hide these columns behind a view or revoke column-level SELECT from anon",
        ))

    if access is None:
        return issues

    if access.insert is Permission.ALLOWED:
        issues.append(Issue(
            severity=Severity.HIGH,
            type="unrestricted_insert",
            subject=name,
            message=f'Table "{name}" allows INSERT operations with anon key',
            recommendation="Consider adding RLS policies to restrict INSERT access",
        ))

    if access.update is Permission.ALLOWED:
        issues.append(Issue(
            severity=Severity.HIGH,
            type="unrestricted_update",
            subject=name,
            message=f'Table "{name}" allows UPDATE operations with anon key',
            recommendation="Consider adding RLS policies to restrict UPDATE access",
        ))

    if access.delete is Permission.ALLOWED:
        issues.append(Issue(
            severity=Severity.CRITICAL,
            type="unrestricted_delete",
            subject=name,
            message=f'Table "{name}" allows DELETE operations with anon key',
            recommendation="Strongly consider adding RLS policies to restrict DELETE access",
        ))

    if access.row_count is not None and access.row_count > large_table_threshold:
        issues.append(Issue(
            severity=Severity.LOW,
            type="large_exposure",
            subject=name,
            message=f'Table "{name}" exposes {access.row_count:,} rows to anon users',
            recommendation="Consider if all this data needs to be publicly accessible",
        ))

    return issues


def analyze_function(function: RpcFunction, result: FunctionAccessResult | None) -> list[Issue]:
    """Flag mutating or administrative functions reachable without authorization."""
    if result is None or not result.accessible or result.requires_auth is not TriState.FALSE:
        return []

    if not any(pattern.search(function.name) for pattern in SENSITIVE_FUNCTION_PATTERNS):
        return []

    # Medium rather than high: a reachable function is not proof it executed
    return [Issue(
        severity=Severity.MEDIUM,
        type="sensitive_function",
        subject=function.name,
        message=(
            f'RPC function "{function.name}" appears to perform sensitive operations '
            "and is callable without authentication"
        ),
        recommendation="Verify this function has proper authentication checks",
    )]


def analyze_bucket(bucket: BucketReport) -> list[Issue]:
    issues: list[Issue] = []
    label = bucket.name or bucket.id

    if bucket.public or bucket.access.is_public:
        issues.append(Issue(
            severity=Severity.MEDIUM,
            type="public_bucket",
            subject=label,
            message=f'Storage bucket "{label}" is publicly accessible',
            recommendation="Review if this bucket should be public. Consider restricting access.",
        ))

    if bucket.access.can_list:
        issues.append(Issue(
            severity=Severity.LOW,
            type="bucket_listable",
            subject=label,
            message=f'Storage bucket "{label}" allows listing files with anon key',
            recommendation="Consider restricting list access if not needed",
        ))

    return issues


def surface_issues(exposed_tables: int, exposed_functions: int) -> list[Issue]:
    """The two low-severity issues emitted on every report."""
    return [
        Issue(
            severity=Severity.LOW,
            type="many_tables",
            message=f"{exposed_tables} tables/views are exposed to the anon key",
            recommendation=(
                "Review if all these tables need to be publicly accessible"
                if exposed_tables > MANY_TABLES_THRESHOLD
                else "Consider if all these tables need to be publicly accessible"
            ),
        ),
        Issue(
            severity=Severity.LOW,
            type="many_functions",
            message=f"{exposed_functions} RPC functions are exposed to the anon key",
            recommendation=(
                "Review if all these functions need to be publicly accessible"
                if exposed_functions > MANY_FUNCTIONS_THRESHOLD
                else "Consider if all these functions need to be publicly accessible"
            ),
        ),
    ]


# ============================================================================
# Scoring
# ============================================================================


def count_by_severity(issues: list[Issue]) -> SeverityBreakdown:
    counts = {severity.value: 0 for severity in Severity}
    for issue in issues:
        counts[issue.severity.value] += 1
    return SeverityBreakdown(**counts)


def calculate_score(breakdown: SeverityBreakdown) -> int:
    """Weighted issue total, capped at 100."""
    total = (
        breakdown.critical * SEVERITY_WEIGHTS[Severity.CRITICAL]
        + breakdown.high * SEVERITY_WEIGHTS[Severity.HIGH]
        + breakdown.medium * SEVERITY_WEIGHTS[Severity.MEDIUM]
        + breakdown.low * SEVERITY_WEIGHTS[Severity.LOW]
    )
    return min(MAX_SCORE, total)


def risk_level(breakdown: SeverityBreakdown, score: int) -> Severity:
    """Derive the risk level; any issue of a severity forces at least that level."""
    if breakdown.critical > 0 or score >= 75:
        return Severity.CRITICAL
    if breakdown.high > 0 or score >= 50:
        return Severity.HIGH
    if breakdown.medium > 0 or score >= 25:
        return Severity.MEDIUM
    return Severity.LOW


def calculate_risk_score(issues: list[Issue]) -> RiskScore:
    breakdown = count_by_severity(issues)
    value = calculate_score(breakdown)
    return RiskScore(score=value, risk_level=risk_level(breakdown, value), breakdown=breakdown)


# ============================================================================
# Remediation
# ============================================================================


def quote_ident(name: str) -> str:
    """Double-quote a SQL identifier, escaping embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def enable_rls_sql(table_name: str) -> str:
    table = quote_ident(table_name)
    return f"""-- Enable RLS on the table
ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;

-- Create a policy that denies all access by default
CREATE POLICY "Deny all access" ON {table}
    FOR ALL
    USING (false);

-- OR create a policy that only allows authenticated users to access their own data
CREATE POLICY "Users can access own data" ON {table}
    FOR ALL
    USING (auth.uid() = user_id);"""


def restricted_view_sql(table: TableSchema | None, table_name: str, sensitive: list[str]) -> str:
    visible = [quote_ident(c.name) for c in table.columns if c.name not in sensitive] if table else []
    select_list = ", ".join(visible) or "*"
    view = quote_ident(f"{table_name}_public")
    hidden = ", ".join(quote_ident(c) for c in sensitive)
    target = quote_ident(table_name)
    return f"""-- Option 1: Create a view without sensitive columns
CREATE VIEW {view} AS
SELECT {select_list}
FROM {target};

-- Option 2: Use column-level security
-- Revoke SELECT on specific columns
REVOKE SELECT ({hidden}) ON {target} FROM anon;"""


POLICY_TEMPLATES_SQL = """-- Allow public read access
CREATE POLICY "Public read access" ON table_name
    FOR SELECT USING (true);

-- Allow authenticated users to insert their own data
CREATE POLICY "Users can insert own data" ON table_name
    FOR INSERT WITH CHECK (auth.uid() = user_id);

-- Allow users to update only their own data
CREATE POLICY "Users can update own data" ON table_name
    FOR UPDATE USING (auth.uid() = user_id);

-- Allow users to delete only their own data
CREATE POLICY "Users can delete own data" ON table_name
    FOR DELETE USING (auth.uid() = user_id);

-- Role-based access (e.g., admin only)
CREATE POLICY "Admin only" ON table_name
    FOR ALL USING (auth.jwt() ->> 'role' = 'admin');"""


def generate_remediations(issues: list[Issue], catalog: Catalog) -> list[Remediation]:
    """Generate SQL remediation for every table that has issues.

    Args:
        issues: All issues of the report.
        catalog: Catalog used to list the columns a restricted view keeps.

    Returns:
        Remediations in first-seen table order, followed by the general
        policy templates when any table has issues.
    """
    table_names = {t.name for t in catalog.tables}
    by_table: dict[str, list[Issue]] = {}
    for issue in issues:
        if issue.subject and issue.subject in table_names:
            by_table.setdefault(issue.subject, []).append(issue)

    remediations: list[Remediation] = []
    for table_name, table_issues in by_table.items():
        if any(i.type in WRITE_ISSUE_TYPES for i in table_issues):
            remediations.append(Remediation(
                title=f'Enable RLS on "{table_name}"',
                description="Enable Row Level Security and add restrictive policies",
                severity="high",
                code=enable_rls_sql(table_name),
            ))

        if any(i.type == "sensitive_columns" for i in table_issues):
            table = catalog.table(table_name)
            sensitive = detect_sensitive_columns(table) if table else []
            remediations.append(Remediation(
                title=f'Hide sensitive columns in "{table_name}"',
                description="Create a view that excludes sensitive columns for public access",
                severity="medium",
                code=restricted_view_sql(table, table_name, sensitive),
            ))

    if by_table:
        remediations.append(Remediation(
            title="RLS Policy Templates",
            description="Common RLS policy patterns you can use",
            severity="info",
            code=POLICY_TEMPLATES_SQL,
        ))

    return remediations


# ============================================================================
# Checklist
# ============================================================================


def _credential_check(credential: Credential | None) -> ChecklistItem:
    if credential is None:
        status, details = CheckStatus.INFO, "No credential information available"
    elif credential.kind == "publishable":
        status, details = CheckStatus.INFO, "Publishable key carries no claims to validate"
    elif credential.is_expired:
        expired_on = credential.expires_at.date().isoformat() if credential.expires_at else "unknown date"
        status, details = CheckStatus.FAIL, f"Token expired on {expired_on}"
    elif credential.valid:
        status, details = CheckStatus.PASS, "Token is valid"
    else:
        status, details = CheckStatus.FAIL, "Token is invalid"

    return ChecklistItem(
        id="jwt_valid",
        title="Valid JWT token",
        description="The anon key should be a valid, non-expired JWT",
        status=status,
        details=details,
    )


def generate_checklist(
    tables: list[TableReport],
    functions: list[FunctionReport],
    buckets: list[BucketReport],
    credential: Credential | None,
) -> list[ChecklistItem]:
    checklist: list[ChecklistItem] = []

    writable = [t.table.name for t in tables if t.access.has_write_access]
    checklist.append(ChecklistItem(
        id="rls_enabled",
        title="Enable RLS on all tables",
        description="Row Level Security should be enabled on all tables that contain user data",
        status=CheckStatus.PASS if not writable else CheckStatus.FAIL,
        details=(
            f"{len(writable)} table(s) allow write operations: {', '.join(writable)}"
            if writable
            else "No tables allow unrestricted write access"
        ),
    ))

    sensitive = [t for t in tables if t.sensitive_columns]
    checklist.append(ChecklistItem(
        id="sensitive_data",
        title="Protect sensitive columns",
        description="Columns containing passwords, tokens, or PII should not be exposed",
        status=CheckStatus.PASS if not sensitive else CheckStatus.WARN,
        details=(
            f"{len(sensitive)} table(s) expose sensitive columns"
            if sensitive
            else "No sensitive columns detected"
        ),
    ))

    checklist.append(_credential_check(credential))

    public_buckets = [b for b in buckets if b.public or b.access.is_public]
    checklist.append(ChecklistItem(
        id="storage_private",
        title="Review public storage buckets",
        description="Public buckets allow anyone to access files without authentication",
        status=CheckStatus.PASS if not public_buckets else CheckStatus.WARN,
        details=(
            f"{len(public_buckets)} public bucket(s) found"
            if public_buckets
            else "No public buckets or storage not accessible"
        ),
    ))

    function_count = len(functions)
    if function_count == 0:
        function_status = CheckStatus.PASS
    elif function_count > 10:
        function_status = CheckStatus.WARN
    else:
        function_status = CheckStatus.INFO
    checklist.append(ChecklistItem(
        id="function_exposure",
        title="Review exposed RPC functions",
        description="RPC functions should have proper authentication checks",
        status=function_status,
        details=f"{function_count} RPC function(s) exposed to anon key",
    ))

    table_count = len(tables)
    if table_count <= 5:
        table_status = CheckStatus.PASS
    elif table_count <= 15:
        table_status = CheckStatus.INFO
    else:
        table_status = CheckStatus.WARN
    checklist.append(ChecklistItem(
        id="table_exposure",
        title="Minimize table exposure",
        description="Only expose tables that need public access",
        status=table_status,
        details=f"{table_count} table(s) exposed to anon key",
    ))

    total_rows = sum(t.access.row_count or 0 for t in tables)
    if total_rows < 1000:
        volume_status = CheckStatus.PASS
    elif total_rows < 100_000:
        volume_status = CheckStatus.INFO
    else:
        volume_status = CheckStatus.WARN
    checklist.append(ChecklistItem(
        id="data_volume",
        title="Review data exposure volume",
        description="Large amounts of exposed data may indicate overly permissive policies",
        status=volume_status,
        details=f"~{total_rows:,} total rows accessible",
    ))

    return checklist


# ============================================================================
# Exposure aggregate
# ============================================================================


def calculate_data_exposure(tables: list[TableReport]) -> DataExposure:
    total_rows = 0
    total_columns = 0
    counted: list[TableRowCount] = []
    sensitive: list[SensitiveTable] = []
    writable: list[WriteAccessTable] = []

    for report in tables:
        name = report.table.name
        access = report.access
        total_columns += len(report.table.columns)

        if access.row_count is not None:
            total_rows += access.row_count
            counted.append(TableRowCount(name=name, row_count=access.row_count))

        if report.sensitive_columns:
            sensitive.append(SensitiveTable(name=name, sensitive_columns=report.sensitive_columns))

        if access.has_write_access:
            writable.append(WriteAccessTable(
                name=name,
                can_insert=access.insert is Permission.ALLOWED,
                can_update=access.update is Permission.ALLOWED,
                can_delete=access.delete is Permission.ALLOWED,
            ))

    largest = sorted(counted, key=lambda t: t.row_count, reverse=True)[:LARGEST_TABLES_LIMIT]

    return DataExposure(
        total_tables=len(tables),
        total_rows=total_rows,
        total_columns=total_columns,
        tables_with_row_count=len(counted),
        largest_tables=tuple(largest),
        sensitive_data_tables=tuple(sensitive),
        write_access_tables=tuple(writable),
    )


# ============================================================================
# Report
# ============================================================================


def score(
    catalog: Catalog,
    probe_results: ProbeResults | None = None,
    credential: Credential | None = None,
    mode: str = "anonymous",
    large_table_threshold: int = LARGE_TABLE_THRESHOLD,
    now: datetime | None = None,
) -> Report:
    """Build the exposure report for one audit run.

    Args:
        catalog: Parsed catalog of tables and functions.
        probe_results: Joined probe output; entities without a result are
            reported with undetermined access.
        credential: Decoded credential, reported with its token masked.
        mode: Analysis mode tag carried on the report.
        large_table_threshold: Row count above which a table is flagged.
        now: Report timestamp (defaults to current UTC).

    Returns:
        The immutable Report.
    """
    probe_results = probe_results or ProbeResults()
    issues: list[Issue] = []

    table_reports: list[TableReport] = []
    for table in catalog.tables:
        access = probe_results.tables.get(table.name)
        issues.extend(analyze_table(table, access, large_table_threshold))
        table_reports.append(TableReport(
            table=table,
            access=access or AccessResult(),
            sensitive_columns=tuple(detect_sensitive_columns(table)),
        ))

    function_reports: list[FunctionReport] = []
    for function in catalog.functions:
        result = probe_results.functions.get(function.name)
        issues.extend(analyze_function(function, result))
        function_reports.append(FunctionReport(
            function=function,
            test_results=result or FunctionAccessResult(),
        ))

    buckets = list(probe_results.buckets)
    for bucket in buckets:
        issues.extend(analyze_bucket(bucket))

    exposed_tables = sum(1 for t in table_reports if (t.access.row_count or 0) > 0)
    exposed_functions = sum(
        1 for f in function_reports if f.test_results.requires_auth is not TriState.TRUE
    )
    issues.extend(surface_issues(exposed_tables, exposed_functions))

    issues.sort(key=lambda issue: issue.severity.rank)
    risk = calculate_risk_score(issues)

    logger.info(
        f"Scored {len(table_reports)} tables, {len(function_reports)} functions, "
        f"{len(buckets)} buckets: {len(issues)} issues, score {risk.score} ({risk.risk_level.value})"
    )

    return Report(
        summary=ReportSummary(
            total_tables=exposed_tables,
            total_functions=exposed_functions,
            total_issues=len(issues),
            total_public_records=sum(t.access.row_count or 0 for t in table_reports),
            risk_score=risk,
        ),
        tables=tuple(table_reports),
        functions=tuple(function_reports),
        buckets=tuple(buckets),
        issues=tuple(issues),
        checklist=tuple(generate_checklist(table_reports, function_reports, buckets, credential)),
        remediations=tuple(generate_remediations(issues, catalog)),
        data_exposure=calculate_data_exposure(table_reports),
        credential_info=credential,
        rls_policies=probe_results.rls_policies,
        mode=mode,
        generated_at=now or datetime.now(timezone.utc),
    )


def report_to_dict(report: Report) -> dict[str, Any]:
    """JSON-ready camelCase representation of a report."""
    return report.model_dump(mode="json", by_alias=True)
