"""
Delegation Audit Tool — inspect permission audit trails and auto-revoke activity.

Connects directly to the permission store and:
- prints the full audit trail of one permission,
- recomputes every audit hash chain, reporting any retroactive alteration,
- shows the configured rule set and event analytics.

Usage:
    python -m delegation_engine.audit verify
    python -m delegation_engine.audit trail perm_0123...
    python -m delegation_engine.audit rules --rules-file rules.json
    python -m delegation_engine.audit --database-url sqlite:///delegation.db verify -v
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from delegation_engine.autorevoke.engine import AutoRevokeEngine
from delegation_engine.autorevoke.rules import load_rules_file
from delegation_engine.config import settings
from delegation_engine.permissions.lifecycle import PermissionLifecycleManager
from delegation_engine.store.base import PermissionStore
from delegation_engine.store.sql import SqlPermissionStore

console = Console()


def run_verify(store: PermissionStore, verbose: bool = False) -> bool:
    """
    Verify the audit hash chain of every permission.

    Returns:
        True if every chain is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ Permission Audit Integrity Check ═══[/bold blue]\n")

    start_time = time.time()
    results = store.verify_chains()
    elapsed = time.time() - start_time

    if not results:
        console.print("[yellow]⚠ No permissions stored — nothing to verify[/yellow]")
        return True

    broken = [r for r in results if not r[1]]
    entries = sum(r[2] for r in results if r[1])
    console.print(f"  Permissions checked: [bold]{len(results)}[/bold]")
    console.print(f"  Audit entries verified: [bold]{entries}[/bold]")
    console.print(f"  Verification time: {elapsed:.3f}s")

    if broken:
        console.print(f"  [bold red]✗ {len(broken)} INVALID chain(s)[/bold red]")
    else:
        console.print("  [bold green]✓ ALL VALID[/bold green]")

    if verbose or broken:
        table = Table(show_lines=True)
        table.add_column("Permission", style="cyan")
        table.add_column("Valid", width=7)
        table.add_column("Entries", width=8)
        table.add_column("Message")
        for permission_id, is_valid, count, message in results:
            if verbose or not is_valid:
                table.add_row(
                    permission_id,
                    "[green]yes[/green]" if is_valid else "[red]NO[/red]",
                    str(count),
                    message,
                )
        console.print(table)

    console.print("\n[bold blue]═══ Check Complete ═══[/bold blue]\n")
    return not broken


def run_trail(store: PermissionStore, permission_id: str) -> bool:
    """Print one permission's state and its audit trail."""
    permission = store.find_by_id(permission_id)
    if permission is None:
        console.print(f"[red]Permission not found: {permission_id}[/red]")
        return False

    scope = permission.scope
    console.print(f"\n[bold]{permission.id}[/bold]  {permission.type.value}")
    console.print(f"  user={permission.user_id} agent={permission.agent_id}")
    console.print(f"  status: [bold]{permission.status.value}[/bold]")
    console.print(
        f"  max_amount={scope.max_amount} max_percentage={scope.max_percentage} "
        f"tokens={','.join(scope.tokens) or 'any'}"
    )
    if permission.metadata.restricted_by:
        console.print(f"  restricted by: {', '.join(permission.metadata.restricted_by)}")
    if permission.metadata.escalated_by:
        console.print(f"  escalated by: {', '.join(permission.metadata.escalated_by)}")

    table = Table(show_lines=True)
    table.add_column("Seq", style="cyan", width=5)
    table.add_column("Action", style="green", width=20)
    table.add_column("By", style="yellow", width=10)
    table.add_column("Timestamp", width=20)
    table.add_column("Reason")
    table.add_column("Hash (first 16)", style="dim", width=19)
    for entry in permission.audit_log:
        table.add_row(
            str(entry.sequence),
            entry.action.value,
            entry.triggered_by.value,
            entry.timestamp.isoformat()[:19],
            entry.reason or "—",
            entry.entry_hash[:16] + "...",
        )
    console.print(table)

    is_valid, _, message = permission.verify_audit_chain()
    style = "green" if is_valid else "red"
    console.print(f"  [{style}]{message}[/{style}]\n")
    return is_valid


def run_rules(engine: AutoRevokeEngine) -> bool:
    """Print the rule set and event analytics for the last week."""
    table = Table(title="Auto-Revoke Rules")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Threshold", justify="right")
    table.add_column("Action", style="yellow")
    table.add_column("Severity")
    table.add_column("Active", width=7)
    for rule in engine.list_rules():
        table.add_row(
            rule.id,
            rule.name or "—",
            rule.condition.value,
            str(rule.threshold),
            rule.action.value,
            rule.severity.value,
            "yes" if rule.is_active else "no",
        )
    console.print(table)

    analytics = engine.analytics()
    console.print(
        f"\n  Events last 24h: [bold]{analytics.events_last_24h}[/bold]   "
        f"last week: [bold]{analytics.events_last_week}[/bold]"
    )
    for item in analytics.top_triggered_rules:
        console.print(f"    {item['rule_id']}: {item['count']}")
    if analytics.severity_distribution:
        console.print(f"  Severity: {analytics.severity_distribution}")
    if analytics.action_distribution:
        console.print(f"  Actions: {analytics.action_distribution}")
    console.print()
    return True


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Delegation engine audit trail inspector"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="Verify every permission's audit hash chain")
    verify.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="List every permission, not just failures",
    )

    trail = sub.add_parser("trail", help="Show one permission's audit trail")
    trail.add_argument("permission_id")

    rules = sub.add_parser("rules", help="Show the rule set and event analytics")
    rules.add_argument(
        "--rules-file",
        default=settings.rules_file,
        help="JSON rule set (defaults to the built-in rules)",
    )

    args = parser.parse_args(argv)
    store = SqlPermissionStore(args.database_url or settings.resolved_database_url)

    if args.command == "verify":
        ok = run_verify(store, verbose=args.verbose)
    elif args.command == "trail":
        ok = run_trail(store, args.permission_id)
    else:
        engine = AutoRevokeEngine(
            PermissionLifecycleManager(store),
            rules=load_rules_file(args.rules_file) if args.rules_file else None,
        )
        ok = run_rules(engine)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
