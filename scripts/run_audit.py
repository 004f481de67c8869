#!/usr/bin/env python3
"""Run an exposure audit from the command line.

Audits a project endpoint with its public key, or discovers both from a
front-end URL first, and prints the report as JSON.

Usage:
    python scripts/run_audit.py --url https://abc.supabase.co --key eyJ...
    python scripts/run_audit.py --frontend https://app.example.com
    python scripts/run_audit.py --url ... --key ... --output report.json
"""

import argparse
import asyncio
import json
import logging
import sys

# Allow running from project root
sys.path.insert(0, ".")

from rls_auditor.services.audit_orchestrator import run_audit
from rls_auditor.services.exceptions import AuditError
from rls_auditor.services.risk_engine import report_to_dict

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


async def audit(project_url: str | None, api_key: str | None, frontend_url: str | None) -> dict:
    report = await run_audit(
        project_url=project_url,
        api_key=api_key,
        frontend_url=frontend_url,
    )
    summary = report.summary
    logger.info(
        f"Risk {summary.risk_score.risk_level.value.upper()} "
        f"(score {summary.risk_score.score}/100), {summary.total_issues} issues"
    )
    return report_to_dict(report)


def main() -> int:
    parser = argparse.ArgumentParser(description="Audit a Supabase/PostgREST backend")
    parser.add_argument("--url", help="Project URL (https)")
    parser.add_argument("--key", help="Anon or publishable key")
    parser.add_argument("--frontend", help="Front-end URL to discover the URL and key from")
    parser.add_argument("--output", help="Write the JSON report to this file instead of stdout")
    args = parser.parse_args()

    if not args.frontend and not (args.url and args.key):
        parser.error("either --url and --key, or --frontend is required")

    try:
        report = asyncio.run(audit(args.url, args.key, args.frontend))
    except AuditError as e:
        logger.error(f"{e.category}: {e.message}")
        return 1

    payload = json.dumps(report, indent=2)
    if args.output:
        with open(args.output, "w") as f:
            f.write(payload)
        logger.info(f"Report written to {args.output}")
    else:
        print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
