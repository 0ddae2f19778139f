# Overview: click commands for operating a POS terminal's sync queue.

# backend/pos_client/cli.py
# Commands Legend (configuration comes from POS_* environment variables):
# - pos-client status
#   Pending/failed counters, last sync time and device id.
# - pos-client sync
#   Run one sync round now.
# - pos-client failed
#   List changes the server rejected, with the reason.
# - pos-client retry [CHANGE_ID ...]
#   Put rejected changes back in the send queue (all when no id is given).
# - pos-client discard CHANGE_ID
#   Give up on a rejected change.
# - pos-client resync
#   Forget the cursor; the next sync pulls a full snapshot.
# - pos-client run
#   Sync in the background every POS_SYNC_INTERVAL seconds until Ctrl+C.

import logging
import time

import click

from . import create_client
from .config import ClientConfig
from .terminal import TerminalError


@click.group()
@click.option('--db', 'db_path', default=None, help='Override POS_DB_PATH')
@click.option('-v', '--verbose', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, db_path, verbose):
    """POS terminal sync tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = ClientConfig.from_env()
    if db_path:
        config.db_path = db_path
    ctx.obj = create_client(config)
    ctx.call_on_close(ctx.obj.close)


@cli.command('status')
@click.pass_obj
def status(terminal):
    info = terminal.status()
    click.echo(f"Device:     {info['device_id']}")
    click.echo(f"Pending:    {info['pending']}")
    click.echo(f"Failed:     {info['failed']}")
    click.echo(f"Last sync:  {info['last_sync_at'] or 'never'}")


@cli.command('sync')
@click.pass_obj
def sync(terminal):
    try:
        result = terminal.sync_now()
    except TerminalError as e:
        raise click.ClickException(str(e))
    if result is None:
        click.echo("SKIP Sync already in progress.")
        return
    if not result.ok:
        raise click.ClickException(f"Offline, changes kept: {result.error}")
    click.echo(f"PASS Sent {result.sent}, confirmed {result.pruned}, failed {len(result.failed)}.")
    for f in result.failed:
        click.echo(f"FAIL {f['change_id']} ({f['type']}): {f['error']}")


@cli.command('failed')
@click.pass_obj
def failed(terminal):
    rows = terminal.change_log.failed()
    if not rows:
        click.echo("No failed changes.")
        return
    for row in rows:
        click.echo(f"{row['change_id']}  {row['type']:<15} attempts={row['attempts']}  {row['error']}")


@cli.command('retry')
@click.argument('change_ids', nargs=-1)
@click.pass_obj
def retry(terminal, change_ids):
    count = terminal.change_log.retry(list(change_ids) if change_ids else None)
    click.echo(f"PASS {count} change(s) queued again.")


@cli.command('discard')
@click.argument('change_id')
@click.confirmation_option(prompt='Discard this change? It will never reach the server.')
@click.pass_obj
def discard(terminal, change_id):
    if not terminal.change_log.discard(change_id):
        raise click.ClickException(f"No failed change {change_id}")
    click.echo(f"PASS Discarded {change_id}.")


@cli.command('resync')
@click.pass_obj
def resync(terminal):
    terminal.resync()
    click.echo("PASS Cursor cleared; next sync pulls a full snapshot.")


@cli.command('run')
@click.pass_obj
def run(terminal):
    try:
        scheduler = terminal.start_background_sync()
    except TerminalError as e:
        raise click.ClickException(str(e))
    click.echo(f"START Syncing every {scheduler.interval:g}s. Ctrl+C to stop.")
    try:
        while scheduler.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("STOP Shutting down...")
    finally:
        terminal.stop_background_sync()


def main():
    cli()


if __name__ == '__main__':
    main()
