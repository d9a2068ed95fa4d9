#!/usr/bin/env python3
"""
CLI entrypoint for link administration: schema setup, bulk link issuance and
per-project link statistics.
"""

import json
import sys
from uuid import UUID

import click

from src.data.database_factory import close_database, setup_database
from src.data.models import LinkVariant
from src.exceptions import LinkGateError
from src.services.link_admission_service import LinkAdmissionService
from src.utils.logging import get_logger

logger = get_logger(__name__)


@click.group()
@click.option("--dsn", default=None, help="Database DSN (defaults to config)")
@click.pass_context
def cli(ctx: click.Context, dsn: str | None):
    """Survey link administration."""
    ctx.ensure_object(dict)
    ctx.obj["dsn"] = dsn


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create all tables and verify connectivity."""
    try:
        created = setup_database(ctx.obj["dsn"])
    except LinkGateError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    finally:
        close_database()
    click.echo(f"Database ready ({len(created)} tables created)")


@cli.command("issue-links")
@click.option("--project", "project_id", required=True, type=click.UUID, help="Project id")
@click.option("--vendor", "vendor_id", default=None, type=click.UUID, help="Vendor id")
@click.option("--count", default=1, type=click.IntRange(min=1), help="Number of links to issue")
@click.option(
    "--variant",
    default=LinkVariant.LIVE.value,
    type=click.Choice([v.value for v in LinkVariant], case_sensitive=False),
    help="TEST links relax enforcement",
)
@click.pass_context
def issue_links(ctx: click.Context, project_id: UUID, vendor_id: UUID | None, count: int, variant: str):
    """Issue single-use links and print one uid per line."""
    service = None
    try:
        setup_database(ctx.obj["dsn"])
        service = LinkAdmissionService()
        links = service.issue_links(project_id, vendor_id, count, variant.upper())
    except LinkGateError as e:
        logger.error(f"Link issuance failed: {e}")
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    finally:
        if service is not None:
            service.shutdown()
        close_database()
    for link in links:
        click.echo(link.uid)


@cli.command("stats")
@click.option("--project", "project_id", required=True, type=click.UUID, help="Project id")
@click.pass_context
def stats(ctx: click.Context, project_id: UUID):
    """Print link statistics for a project as JSON."""
    service = None
    try:
        setup_database(ctx.obj["dsn"])
        service = LinkAdmissionService()
        result = service.link_stats(project_id)
    except LinkGateError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    finally:
        if service is not None:
            service.shutdown()
        close_database()
    click.echo(json.dumps(result.model_dump(), indent=2))


if __name__ == "__main__":
    cli()
