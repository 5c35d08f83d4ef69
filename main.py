import asyncio
import argparse
import logging
import sys
from pathlib import Path

from habitsync.app import build_app
from habitsync.config import load_config
from habitsync.errors import AuthError, SyncError
from habitsync.remote.codec import repair_mojibake
from habitsync.sync.conflict import ResolutionStrategy

logger = logging.getLogger(__name__)


def setup_logging(args):
    """Console plus log file; verbosity from --debug/--quiet"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('habitsync.log')
        ]
    )

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)


def load_app_config(args):
    """Config file with command line overrides"""
    config = load_config(args.config)

    if args.data_dir:
        config.storage.data_dir = args.data_dir
        config.storage.keys_dir = str(Path(args.data_dir) / "keys")
    if args.remote_dir:
        config.remote.backend = "file"
        config.remote.directory = args.remote_dir

    return config


def print_records(snapshot, show_hidden=False):
    for record in snapshot.records:
        if record.hidden and not show_hidden:
            continue
        mark = 'x' if record.completed else ' '
        suffix = ' (hidden)' if record.hidden else ''
        print(f"[{mark}] {record.id}  {record.text}{suffix}")


async def run_daemon(app, args):
    """Run mode: background sync until interrupted"""
    logger.info("=== Starting habitsync ===")
    await app.run()


async def run_sync(app, args):
    """One manual sync; conflicts are listed, not resolved"""
    outcome = await app.scheduler.manual_sync()

    if outcome.success:
        logger.info(f"✓ Sync completed: {outcome.synced_records} records")
        return 0

    print(f"{len(outcome.conflicts)} conflicts need a decision:")
    for conflict in outcome.conflicts:
        print(f"  {conflict.id}")
        print(f"    local:  {conflict.local.text!r} (completed={conflict.local.completed})")
        print(f"    remote: {conflict.remote.text!r} (completed={conflict.remote.completed})")
    print("Run 'habitsync resolve --strategy {local,remote,merge}' to resolve them")
    return 2


async def run_resolve(app, args):
    """Sync, then resolve every conflict with one strategy"""
    outcome = await app.scheduler.manual_sync()
    if outcome.success:
        logger.info("No conflicts to resolve")
        return 0

    conflicts = app.scheduler.pending_conflicts
    strategy = ResolutionStrategy(args.strategy)
    outcome = await app.scheduler.resolve_conflicts([strategy] * len(conflicts))

    if not outcome.success:
        logger.warning(f"{len(outcome.conflicts)} new conflicts appeared, run resolve again")
        return 2

    logger.info(f"✓ Resolved {len(conflicts)} conflicts with {strategy.value}")
    return 0


async def run_command(app, args):
    """Route to the selected mode"""
    if args.mode == 'run':
        await run_daemon(app, args)
        return 0

    await app.start(background=False)

    if args.mode == 'sync':
        return await run_sync(app, args)

    if args.mode == 'resolve':
        return await run_resolve(app, args)

    if args.mode == 'list':
        print_records(app.local.load(), show_hidden=args.all)
        return 0

    if args.mode == 'add':
        record = app.local.add_record(args.text)
        print(record.id)
        return 0

    if args.mode == 'done':
        record = app.local.toggle_completed(args.id)
        logger.info(f"{record.id} completed={record.completed}")
        return 0

    if args.mode == 'hide':
        record = app.local.set_hidden(args.id, hidden=not args.show)
        logger.info(f"{record.id} hidden={record.hidden}")
        return 0

    if args.mode == 'delete':
        if not app.local.delete_record(args.id):
            logger.warning(f"No record with id {args.id}, deletion recorded anyway")
        return 0

    if args.mode in ('push', 'pull'):
        if not app.is_authenticated():
            raise AuthError("Remote store is not configured")
        if args.mode == 'push':
            snapshot, _ = await app.updater.push()
            logger.info(f"✓ Pushed {len(snapshot.records)} records")
        else:
            snapshot = await app.updater.pull()
            logger.info(f"✓ Pulled {len(snapshot.records)} records")
        return 0

    if args.mode == 'repair':
        changed = app.local.repair_text(repair_mojibake)
        logger.info(f"Repaired {changed} records")
        return 0

    if args.mode == 'status':
        state = app.scheduler.state
        print(f"Device:          {app.identity}")
        print(f"Status:          {state.status.value}")
        print(f"Last sync:       {state.last_sync_time or 'never'}")
        print(f"Pending changes: {'yes' if state.pending_changes else 'no'}")
        print(f"Conflicts:       {state.conflict_count}")
        if state.last_error:
            print(f"Last error:      {state.last_error} ({state.error_kind})")
        print(f"Tombstones:      {len(app.tombstones)}")
        return 0

    raise ValueError(f"Unknown mode: {args.mode}")


def create_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        description='habitsync - keep a personal record list in sync across devices',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync continuously with a shared folder
  habitsync run --remote-dir ~/Dropbox/habitsync

  # Add a record and sync it now
  habitsync add "Drink water"
  habitsync sync

  # Keep the local side of every conflict
  habitsync resolve --strategy local
        """
    )

    # Common arguments
    parser.add_argument(
        '--config',
        default='habitsync.yaml',
        help='YAML configuration file (default: habitsync.yaml)'
    )
    parser.add_argument(
        '--data-dir',
        help='Local data directory (overrides the config file)'
    )
    parser.add_argument(
        '--remote-dir',
        help='Use a shared directory as the remote store'
    )

    # Logging
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Minimal output'
    )

    # Mode selection
    modes = parser.add_subparsers(dest='mode', required=True, help='Execution mode')

    modes.add_parser('run', help='Sync in the background until interrupted')
    modes.add_parser('sync', help='Sync once now')

    list_parser = modes.add_parser('list', help='Show records')
    list_parser.add_argument('--all', action='store_true', help='Include hidden records')

    add_parser = modes.add_parser('add', help='Add a record')
    add_parser.add_argument('text', help='Record text')

    done_parser = modes.add_parser('done', help='Toggle completion of a record')
    done_parser.add_argument('id', help='Record id')

    hide_parser = modes.add_parser('hide', help='Hide a record')
    hide_parser.add_argument('id', help='Record id')
    hide_parser.add_argument('--show', action='store_true', help='Unhide instead')

    delete_parser = modes.add_parser('delete', help='Delete a record')
    delete_parser.add_argument('id', help='Record id')

    resolve_parser = modes.add_parser('resolve', help='Resolve pending conflicts')
    resolve_parser.add_argument(
        '--strategy',
        required=True,
        choices=[s.value for s in ResolutionStrategy],
        help='Keep the local side, the remote side, or merge them'
    )

    modes.add_parser('push', help='Overwrite the remote data with local data')
    modes.add_parser('pull', help='Overwrite local data with the remote data')
    modes.add_parser('repair', help='Fix mis-decoded text in local records')
    modes.add_parser('status', help='Show sync status')

    return parser


async def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args)

    try:
        app = build_app(load_app_config(args))
    except (SyncError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        return 1

    try:
        return await run_command(app, args)
    except KeyError as e:
        logger.error(f"Not found: {e}")
        return 1
    except SyncError as e:
        logger.error(f"{e.kind} error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        if args.mode != 'run':
            await app.close()


def cli():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")


if __name__ == '__main__':
    cli()
