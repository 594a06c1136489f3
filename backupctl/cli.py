"""
Command line entry point.

    backup [--incremental] [--dry-run] <sourceDir>
    backup --list
    backup --restore <name> --to <dir> [--no-verify]
    backup --verify <name>
    backup --schedule "<crontab>" [--incremental] <sourceDir>

Exit status is 0 on success, 1 on a runtime failure and 2 on invalid
arguments.
"""

import os
import sys
import signal
import logging
import argparse

from backupctl import __version__, configure_logging
from backupctl.config import load_config, resolve_config_path
from backupctl.errors import BackupError, InvalidArguments
from backupctl.backup import execute_backup, list_backups, restore_backup, verify_backup
from backupctl.backup.digest import DigestStatus
from backupctl.backup.storage import BYTES_PER_MB


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 128 + signal.SIGTERM


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backup',
        description='Create, rotate, verify and restore compressed backups of a directory.'
    )
    parser.add_argument('source', nargs='?', help='Directory to back up')

    action = parser.add_mutually_exclusive_group()
    action.add_argument('--list', action='store_true', help='List existing backups, newest first')
    action.add_argument('--restore', metavar='NAME', help='Restore the named backup (requires --to)')
    action.add_argument('--verify', metavar='NAME', help='Check the named backup against its digest record')
    action.add_argument('--schedule', metavar='CRON',
                        help='Run backups of SOURCE on a crontab schedule, e.g. "0 2 * * *"')

    parser.add_argument('--incremental', action='store_true',
                        help='Only archive entries changed since the last incremental run')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Log what would be done without writing anything')
    parser.add_argument('--to', metavar='DIR', help='Restore target directory')
    parser.add_argument('--no-verify', dest='verify_digest', action='store_false',
                        help='Skip the digest check before restoring')
    parser.add_argument('--config', metavar='FILE',
                        help='Config file (default: $BACKUP_CONFIG or ./backup.config)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def _handle_sigterm(signum, frame):
    # Unwinds like Ctrl+C so context managers release the lock
    raise SystemExit(EXIT_TERMINATED)


def _format_size(path: str) -> str:
    try:
        return f"{os.path.getsize(path) / BYTES_PER_MB:.2f} MB"
    except OSError:
        return '-'


def _print_backups(config) -> int:
    entries = list_backups(config)
    if not entries:
        print("No backups found.")
        return EXIT_OK

    for entry in entries:
        status = 'verified' if entry.is_verified else 'unverified'
        print(f"{entry.name}  {entry.kind:<11}  {_format_size(entry.path):>10}  {status}")
    return EXIT_OK


def _verify(config, name: str) -> int:
    status = verify_backup(config, name)
    if status is DigestStatus.VALID:
        logger.info(f"{name}: OK")
        return EXIT_OK
    if status is DigestStatus.MISSING:
        logger.error(f"{name}: no digest record")
    else:
        logger.error(f"{name}: digest mismatch")
    return EXIT_FAILURE


def _dispatch(args, config) -> int:
    if args.to and not args.restore:
        raise InvalidArguments("--to is only valid with --restore")

    if args.list:
        return _print_backups(config)

    if args.verify:
        return _verify(config, args.verify)

    if args.restore:
        if not args.to:
            raise InvalidArguments("--restore requires --to <dir>")
        restore_backup(config, args.restore, args.to, verify_digest=args.verify_digest)
        return EXIT_OK

    if not args.source:
        raise InvalidArguments("A source directory is required (see --help)")

    if args.schedule:
        if args.dry_run:
            raise InvalidArguments("--schedule cannot be combined with --dry-run")
        # Imported lazily so one-shot runs do not pay for APScheduler
        from backupctl.scheduler import run_scheduler
        run_scheduler(config, args.source, args.schedule, incremental=args.incremental)
        return EXIT_OK

    dry_run = config.default_dry_run if args.dry_run is None else args.dry_run
    result = execute_backup(config, args.source, incremental=args.incremental, dry_run=dry_run)
    return result.exit_code


def main(argv=None) -> int:
    """
    Run the CLI.

    Args:
        argv: Argument list (defaults to sys.argv[1:])

    Returns:
        Process exit status
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except BackupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    try:
        configure_logging(config, verbose=args.verbose)
    except OSError as e:
        print(f"Error: cannot open log file {config.log_file}: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if config.source_path is None:
        logger.warning(f"Config file not found: {resolve_config_path(args.config)}. Using defaults.")
    else:
        logger.debug(f"Loaded config from {config.source_path}")

    previous_handler = signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        return _dispatch(args, config)
    except BackupError as e:
        logger.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return EXIT_INTERRUPTED
    finally:
        signal.signal(signal.SIGTERM, previous_handler)


if __name__ == '__main__':
    sys.exit(main())
