"""Administrative commands for the governance engine.

Usage:
    tagwarden-migrate                          # create database, upgrade to head
    tagwarden-reconcile [--organization ID]    # repair counter drift
    tagwarden-reconcile --prune-expired        # also drop expired memberships
    tagwarden-provision ORG_ID [ORG_ID ...]    # (re)provision default tags
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import TYPE_CHECKING
from uuid import UUID

from rich.console import Console

from tagwarden import setup_logging
from tagwarden.config import get_settings

if TYPE_CHECKING:
    from tagwarden.db.reconcile import Drift

console = Console()


def _require_database_url() -> None:
    if not get_settings().database.url:
        console.print("[red]Error:[/] DATABASE__URL not set")
        sys.exit(1)


def migrate() -> None:
    """CLI entry point: run Alembic migrations and verify the schema."""
    parser = argparse.ArgumentParser(
        prog="tagwarden-migrate",
        description="Create the database if needed and upgrade it to head.",
    )
    parser.parse_args()
    setup_logging()
    _require_database_url()

    from tagwarden.db.bootstrap import run_alembic_upgrade, verify_schema
    from tagwarden.db.engine import close_db, get_engine, init_db

    try:
        run_alembic_upgrade()
    except RuntimeError as exc:
        console.print(f"[red]Migration failed:[/]\n{exc}")
        sys.exit(1)

    async def _verify() -> None:
        await init_db()
        try:
            await verify_schema(get_engine())
        finally:
            await close_db()

    asyncio.run(_verify())
    console.print("[green]Schema is up to date.[/]")


def _print_drift(label: str, drift: list[Drift]) -> None:
    from rich.table import Table

    if not drift:
        console.print(f"[green]No {label} drift.[/]")
        return

    table = Table(title=f"Corrected {label}")
    table.add_column("Id", style="cyan")
    table.add_column("Organization", style="dim")
    table.add_column("Stored", justify="right")
    table.add_column("Actual", justify="right")
    for item in drift:
        table.add_row(
            str(item.id), str(item.organization_id), str(item.stored), str(item.actual)
        )
    console.print(table)


async def _reconcile(organization_id: UUID | None, *, prune_expired: bool) -> None:
    from tagwarden.db.engine import close_db, init_db
    from tagwarden.db.reconcile import (
        prune_expired_memberships,
        reconcile_member_counts,
        reconcile_usage_counts,
    )

    await init_db()
    try:
        if prune_expired:
            pruned = await prune_expired_memberships(organization_id=organization_id)
            console.print(f"Pruned [bold]{pruned}[/] expired membership(s).")
        _print_drift("usage counts", await reconcile_usage_counts(organization_id))
        _print_drift("member counts", await reconcile_member_counts(organization_id))
    finally:
        await close_db()


def reconcile() -> None:
    """CLI entry point: recompute denormalized counters from source rows."""
    parser = argparse.ArgumentParser(
        prog="tagwarden-reconcile",
        description="Repair tag usage and group member counters.",
    )
    parser.add_argument(
        "--organization",
        type=UUID,
        default=None,
        help="Limit to one organization (default: all).",
    )
    parser.add_argument(
        "--prune-expired",
        action="store_true",
        help="Delete group memberships whose expiry has passed first.",
    )
    args = parser.parse_args()
    setup_logging()
    _require_database_url()

    asyncio.run(_reconcile(args.organization, prune_expired=args.prune_expired))


async def _provision(organization_ids: list[UUID]) -> int:
    from tagwarden.db.effective import provision_new_organization
    from tagwarden.db.engine import close_db, init_db
    from tagwarden.errors import GovernanceError

    failures = 0
    await init_db()
    try:
        for organization_id in organization_ids:
            try:
                tags = await provision_new_organization(organization_id)
            except GovernanceError as exc:
                failures += 1
                console.print(f"[red]Error[/] {organization_id}: {exc}")
                continue
            if tags:
                names = ", ".join(tag.name for tag in tags)
                console.print(f"[green]{organization_id}[/]: created {names}")
            else:
                console.print(f"[yellow]{organization_id}[/]: already provisioned")
    finally:
        await close_db()
    return failures


def provision() -> None:
    """CLI entry point: provision required default tags into organizations."""
    parser = argparse.ArgumentParser(
        prog="tagwarden-provision",
        description="Create missing system tags from required default tag sets.",
    )
    parser.add_argument("organization_ids", nargs="+", type=UUID, metavar="ORG_ID")
    args = parser.parse_args()
    setup_logging()
    _require_database_url()

    if asyncio.run(_provision(args.organization_ids)):
        sys.exit(1)
