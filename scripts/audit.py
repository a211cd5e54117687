#!/usr/bin/env python3
"""Configuration audit script for the WhatsApp relay.

Checks the environment configuration for routing gaps and unsafe settings
before the service is deployed.

Exit codes:
    0: no findings
    1: findings reported
    2: configuration cannot be loaded (e.g., two workspaces claim one number)

Usage:
    python scripts/audit.py [--format json|text]
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict, dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.config import Settings, load_settings  # noqa: E402
from src.routing.registry import DEFAULT_TARGET_KEY, WebhookRegistry  # noqa: E402
from src.routing.sender import SenderIdentityResolver, SenderUnresolvedError  # noqa: E402
from src.routing.workspaces import ConfigurationError, WorkspaceResolver  # noqa: E402


@dataclass
class Finding:
    check: str
    severity: str  # critical, high, medium, low
    message: str
    remediation: str


# --- Check functions ---


def secret_management(settings: Settings) -> list[Finding]:
    """Check credentials and request authentication settings."""
    findings: list[Finding] = []
    if not (settings.twilio_account_sid and settings.twilio_auth_token):
        findings.append(Finding(
            check="secret_management",
            severity="high",
            message="Twilio credentials are not configured; outbound sends will fail",
            remediation="Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN",
        ))
    if not settings.service_token:
        findings.append(Finding(
            check="secret_management",
            severity="high",
            message="WHATSAPP_SERVICE_TOKEN is unset; /api endpoints are unauthenticated",
            remediation="Set WHATSAPP_SERVICE_TOKEN to a long random value",
        ))
    if not settings.validate_twilio_signature:
        findings.append(Finding(
            check="secret_management",
            severity="medium",
            message="Twilio signature validation is disabled; /webhook accepts forged callbacks",
            remediation="Set TWILIO_VALIDATE_SIGNATURE=true",
        ))
    return findings


def webhook_routing(settings: Settings, workspaces: WorkspaceResolver) -> list[Finding]:
    """Check that every workspace has somewhere to forward inbound messages."""
    findings: list[Finding] = []
    registry = WebhookRegistry()
    registry.load(settings.webhooks)

    for target in registry.snapshot():
        if not target.url.startswith("https://"):
            findings.append(Finding(
                check="webhook_routing",
                severity="medium",
                message=f"Webhook '{target.name}' ({target.key}) is not served over HTTPS",
                remediation="Use an https:// URL for the webhook target",
            ))

    if registry.lookup(workspaces.default.id) is None:
        findings.append(Finding(
            check="webhook_routing",
            severity="medium",
            message="No enabled default webhook; unmatched numbers are dropped",
            remediation="Set N8N_DEFAULT_WEBHOOK_URL",
        ))

    for ws in workspaces.workspaces:
        if ws.receiving_number is None:
            findings.append(Finding(
                check="webhook_routing",
                severity="low",
                message=f"Workspace {ws.id} has no receiving number and gets no inbound traffic",
                remediation=f"Set TWILIO_WHATSAPP_NUMBER__{ws.id}",
            ))
            continue
        if registry.lookup(ws.id, ws.receiving_number) is None:
            findings.append(Finding(
                check="webhook_routing",
                severity="high",
                message=f"Workspace {ws.id} ({ws.display_name}) has no webhook target",
                remediation=f"Set N8N_WEBHOOK_WORKSPACE_{ws.id}_URL or a default webhook",
            ))
    return findings


def sender_coverage(settings: Settings, workspaces: WorkspaceResolver) -> list[Finding]:
    """Check that replies can be sent for every workspace."""
    findings: list[Finding] = []
    resolver = SenderIdentityResolver(
        workspaces,
        default_number=settings.default_whatsapp_number,
        default_pool_id=settings.default_messaging_service_sid,
    )
    candidates = {ws.id: ws for ws in [workspaces.default, *workspaces.workspaces]}
    for ws in candidates.values():
        try:
            resolver.resolve(ws.id)
        except SenderUnresolvedError:
            findings.append(Finding(
                check="sender_coverage",
                severity="high",
                message=f"Workspace {ws.id} has no sender; replies will fail",
                remediation=(
                    f"Set TWILIO_MESSAGING_SERVICE_SID__{ws.id} or TWILIO_WHATSAPP_NUMBER"
                ),
            ))
    return findings


# --- Report output ---


def print_report(findings: list[Finding], fmt: str = "text") -> None:
    if fmt == "json":
        print(json.dumps([asdict(f) for f in findings], indent=2))
        return

    if not findings:
        print("All checks passed. No findings.")
        return

    severity_order = {"critical": 0, "high": 1, "medium": 2, "low": 3}
    sorted_findings = sorted(findings, key=lambda f: severity_order.get(f.severity, 99))

    print(f"\n{'='*60}")
    print(f" Configuration Audit Report: {len(findings)} finding(s)")
    print(f"{'='*60}\n")

    for f in sorted_findings:
        icon = {"critical": "[CRIT]", "high": "[HIGH]", "medium": "[MED ]", "low": "[LOW ]"}.get(
            f.severity, "[????]"
        )
        print(f"  {icon} [{f.check}] {f.message}")
        print(f"        Fix: {f.remediation}")
        print()


def run_checks(settings: Settings) -> list[Finding]:
    """Run every check; raises ConfigurationError for an unloadable table."""
    workspaces = WorkspaceResolver(settings.workspaces)
    return [
        *secret_management(settings),
        *webhook_routing(settings, workspaces),
        *sender_coverage(settings, workspaces),
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="WhatsApp relay configuration audit")
    parser.add_argument("--format", choices=["text", "json"], default="text")
    args = parser.parse_args(argv)

    try:
        findings = run_checks(load_settings())
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print_report(findings, fmt=args.format)
    return 0 if not findings else 1


if __name__ == "__main__":
    sys.exit(main())
