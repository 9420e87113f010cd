"""CLI interface for the sync engine."""

import argparse
import sys

from ..common.config import DEFAULT_CONFIG_PATH, MirrorSyncConfig, load_typed_config
from ..common.logger import setup_from_storage
from .context import SyncContext
from .worker import SyncModuleWorker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m regmirror.sync",
        description="Sync packages or users from the upstream registry.",
    )
    parser.add_argument("names", nargs="+", metavar="NAME", help="package or user names")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="configuration file")
    parser.add_argument("--type", choices=["module", "user"], default="module")
    parser.add_argument("--no-dep", action="store_true", help="do not follow dependencies")
    parser.add_argument(
        "--from-backup", action="store_true", help="rebuild packages from backup records"
    )
    parser.add_argument("--username", default="admin", help="actor recorded on synced versions")
    return parser


def main(argv=None) -> int:
    """Main entry point for sync CLI."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = load_typed_config(args.config)
    except FileNotFoundError:
        # Use defaults if config not found
        config = MirrorSyncConfig()

    setup_from_storage(config.storage)

    context = SyncContext.from_config(config)
    log_id = context.log_service.create(",".join(args.names), args.username)
    worker = SyncModuleWorker(
        args.names,
        args.username,
        context,
        type=args.type,
        no_dep=args.no_dep,
        sync_from_backup=args.from_backup,
        log_id=log_id,
    )
    try:
        worker.start()
        worker.wait()
    finally:
        context.upstream.close()

    print(f"Log id: {log_id}")
    print(f"Successes ({len(worker.successes)}): {', '.join(worker.successes)}")
    print(f"Failures ({len(worker.failures)}): {', '.join(worker.failures)}")

    return 1 if worker.failures else 0


if __name__ == "__main__":
    sys.exit(main())
