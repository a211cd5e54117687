"""Click CLI for inspecting routing configuration."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import UTC, datetime

import click

from src.config import load_settings
from src.models import InboundMessage
from src.routing.dispatcher import Dispatcher
from src.routing.idempotency import IdempotencyStore
from src.routing.phone import strip_channel_prefix
from src.routing.registry import WebhookRegistry
from src.routing.sender import SenderIdentityResolver, SenderUnresolvedError
from src.routing.workspaces import WorkspaceResolver


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """WhatsApp relay routing CLI (reads configuration from the environment)."""
    ctx.ensure_object(dict)
    settings = load_settings()
    workspaces = WorkspaceResolver(settings.workspaces)
    registry = WebhookRegistry()
    registry.load(settings.webhooks)
    ctx.obj["settings"] = settings
    ctx.obj["workspaces"] = workspaces
    ctx.obj["registry"] = registry


@cli.command("workspaces")
@click.pass_context
def list_workspaces(ctx: click.Context) -> None:
    """List configured workspaces and the webhook each one routes to."""
    workspaces: WorkspaceResolver = ctx.obj["workspaces"]
    registry: WebhookRegistry = ctx.obj["registry"]
    output = []
    for ws in workspaces.workspaces:
        target = registry.lookup(ws.id, ws.receiving_number or "")
        output.append({
            **ws.model_dump(mode="json"),
            "webhook": target.name if target else None,
        })
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.argument("receiving_number")
@click.pass_context
def resolve(ctx: click.Context, receiving_number: str) -> None:
    """Show which workspace and webhook a receiving number routes to."""
    workspaces: WorkspaceResolver = ctx.obj["workspaces"]
    registry: WebhookRegistry = ctx.obj["registry"]
    ws = workspaces.resolve(receiving_number)
    target = registry.lookup(ws.id, strip_channel_prefix(receiving_number))
    click.echo(json.dumps({
        "workspace_id": ws.id,
        "workspace_name": ws.display_name,
        "webhook": target.name if target else None,
    }, indent=2))


@cli.command()
@click.option("--workspace", "workspace_id", default=None, help="Workspace id.")
@click.option("--override", default=None, help="Explicit sender number.")
@click.pass_context
def sender(ctx: click.Context, workspace_id: str | None, override: str | None) -> None:
    """Show the sender identity an outbound reply would use."""
    settings = ctx.obj["settings"]
    resolver = SenderIdentityResolver(
        ctx.obj["workspaces"],
        default_number=settings.default_whatsapp_number,
        default_pool_id=settings.default_messaging_service_sid,
    )
    try:
        identity = resolver.resolve(workspace_id, override)
    except SenderUnresolvedError as e:
        raise click.ClickException(str(e)) from e
    click.echo(identity.model_dump_json(indent=2, exclude_none=True))


@cli.command("forward-test")
@click.argument("receiving_number")
@click.option("--sender", "from_number", default="+10000000000", help="Simulated customer number.")
@click.option("--text", default="Test message", help="Message body.")
@click.option("--message-id", default=None, help="Message id (random if omitted).")
@click.pass_context
def forward_test(
    ctx: click.Context,
    receiving_number: str,
    from_number: str,
    text: str,
    message_id: str | None,
) -> None:
    """Forward a synthetic inbound message to the resolved webhook."""
    settings = ctx.obj["settings"]
    dispatcher = Dispatcher(
        ctx.obj["workspaces"],
        ctx.obj["registry"],
        IdempotencyStore(),
        timeout_seconds=settings.forward_timeout_seconds,
    )
    message = InboundMessage.model_validate({
        "from": from_number,
        "to": receiving_number,
        "body": text,
        "messageId": message_id or f"TEST{uuid.uuid4().hex[:24]}",
        "timestamp": datetime.now(UTC).isoformat(),
    })
    result = asyncio.run(dispatcher.handle(message))
    click.echo(result.model_dump_json(indent=2, exclude_none=True))
    if not result.forwarded:
        ctx.exit(1)
