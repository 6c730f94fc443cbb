"""
Operator entry point for the inbound queue.

Usage:
    python -m inboxflow.cli scan                 # process every ready group
    python -m inboxflow.cli process <group_id>   # targeted admission check
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from rich.console import Console
from rich.table import Table

from inboxflow.core.logging import setup_logging
from inboxflow.services.group_admission import AdmissionResult
from inboxflow.settings import get_settings
from inboxflow.wiring import build_app_context

console = Console()

_DECISION_STYLES = {
    "processed": "green",
    "deferred": "yellow",
    "missing": "dim",
    "failed": "red",
}


def render_results(results: list[AdmissionResult]) -> Table:
    table = Table(title="Queue invocation")
    table.add_column("Group")
    table.add_column("Decision")
    table.add_column("Outcome")
    table.add_column("Messages", justify="right")
    table.add_column("Detail")
    for result in results:
        style = _DECISION_STYLES.get(result.decision, "")
        run = result.run
        if result.error:
            detail = result.error
        elif result.retry_in_seconds is not None:
            detail = f"re-check in {result.retry_in_seconds:.0f}s"
        else:
            detail = (run.reply_text or "") if run else ""
        table.add_row(
            result.group_id,
            f"[{style}]{result.decision}[/{style}]" if style else result.decision,
            run.outcome.value if run and run.outcome else "-",
            str(run.message_count) if run else "-",
            detail[:60],
        )
    return table


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the inbound message group processor")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("scan", help="Process every ready group of every automation-enabled account")
    process = sub.add_parser("process", help="Check and process a single group")
    process.add_argument("group_id", help="Queue group id")
    return parser


async def _run(args: argparse.Namespace) -> list[AdmissionResult]:
    ctx = build_app_context(get_settings())
    if args.command == "process":
        return [await ctx.admission.check_group(args.group_id)]
    return await ctx.admission.scan()


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    try:
        results = asyncio.run(_run(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    if not results:
        console.print("[dim]No ready groups.[/dim]")
        return 0
    console.print(render_results(results))
    return 1 if any(r.decision == "failed" for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
