"""CLI tools for the channel sync engine."""

import json
from datetime import datetime
from uuid import UUID

import click

from inbox_sync import scheduling
from inbox_sync.core.encryption import rotate_token
from inbox_sync.db.enums import ChannelProvider
from inbox_sync.db.models import ChannelConnection
from inbox_sync.db.session import SessionLocal
from inbox_sync.services import connection_service, orchestrator_service


@click.group()
def cli():
    """Inbox sync CLI tools."""
    pass


@cli.command("list-tasks")
def list_tasks():
    """List scheduled tasks and their reference cadence."""
    for task in scheduling.TASKS.values():
        click.echo(f"{task.name:<16} {task.cadence:<12} {task.description}")


@cli.command("run-task")
@click.argument("name")
@click.option("--workspace-id", type=click.UUID, default=None, help="Limit sync-all to one workspace")
@click.option("--max-messages", type=int, default=None, help="Per-pass message limit")
@click.option("--auto-classify/--no-auto-classify", default=None, help="Forward new messages to the classifier")
def run_task(name: str, workspace_id: UUID | None, max_messages: int | None, auto_classify: bool | None):
    """
    Run a scheduled task once (for crontab or one-off operator use).

    Example:
        inbox-sync run-task sync-all --max-messages 100
    """
    try:
        task = scheduling.get_task(name)
    except KeyError:
        raise click.BadParameter(f"unknown task '{name}'", param_hint="NAME")

    options = {}
    if task.name == "sync-all":
        options = {
            "workspace_id": workspace_id,
            "max_messages": max_messages,
            "auto_classify": auto_classify,
        }
    result = scheduling.run_task(task.name, **options)
    click.echo(json.dumps(result, indent=2))


@cli.command("sync-connection")
@click.argument("connection_id", type=click.UUID)
@click.option("--max-messages", type=int, default=None, help="Per-pass message limit")
def sync_connection(connection_id: UUID, max_messages: int | None):
    """Sync one connection now (manual trigger)."""
    outcome = orchestrator_service.sync_connection_now(connection_id, max_messages=max_messages)
    if outcome.skipped_reason:
        click.echo(f"⚠ Skipped: {outcome.skipped_reason}")
        return
    if outcome.error is not None:
        click.echo(f"❌ {outcome.error.kind.value}: {outcome.error.message}")
        raise SystemExit(1)
    click.echo(
        f"✓ new={outcome.new_message_count} updated={outcome.updated_message_count} "
        f"passes={outcome.passes}"
    )


@cli.command("connect")
@click.option("--workspace-id", type=click.UUID, required=True, help="Owning workspace")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in ChannelProvider]),
    required=True,
    help="Channel provider",
)
@click.option("--account-id", required=True, help="Provider account id (email or Slack team id)")
@click.option("--access-token", required=True, help="OAuth access token")
@click.option("--refresh-token", default=None, help="OAuth refresh token")
@click.option("--expires-at", type=click.DateTime(), default=None, help="Access token expiry (UTC)")
@click.option("--name", "display_name", default=None, help="Display name")
def connect(
    workspace_id: UUID,
    provider: str,
    account_id: str,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
    display_name: str | None,
):
    """
    Store tokens from an out-of-band OAuth flow and queue webhook registration.

    Re-running for an auth_expired/disconnected account re-authorizes it.
    """
    db = SessionLocal()
    try:
        connection = connection_service.register_connection(
            db,
            workspace_id=workspace_id,
            provider=ChannelProvider(provider),
            provider_account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
            display_name=display_name,
        )
        click.echo(f"✓ Connection {connection.id} ({connection.status.value})")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command("disconnect")
@click.argument("connection_id", type=click.UUID)
def disconnect(connection_id: UUID):
    """Disconnect a connection in error/auth_expired state."""
    db = SessionLocal()
    try:
        connection = connection_service.disconnect_connection(db, connection_id)
        click.echo(f"✓ Connection {connection.id} disconnected")
    except LookupError:
        click.echo(f"❌ Connection {connection_id} not found")
    except connection_service.InvalidTransitionError as e:
        click.echo(f"❌ {e}")
    finally:
        db.close()


@cli.command("rotate-tokens")
def rotate_tokens():
    """Re-encrypt stored OAuth tokens under the first FERNET_KEY."""
    db = SessionLocal()
    try:
        rotated = 0
        for connection in db.query(ChannelConnection).all():
            connection.access_token_encrypted = rotate_token(connection.access_token_encrypted) or None
            connection.refresh_token_encrypted = rotate_token(connection.refresh_token_encrypted) or None
            rotated += 1
        db.commit()
        click.echo(f"✓ Rotated tokens for {rotated} connections")
    except ValueError as e:
        db.rollback()
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command("worker")
def worker():
    """Run the background job worker."""
    from inbox_sync.worker import main

    main()


if __name__ == "__main__":
    cli()
