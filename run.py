#!/usr/bin/env python3
"""Backup runner"""
import argparse
import asyncio
import signal
import sys
from dataclasses import replace

from sealback import configure_logging
from sealback.backup.executor import BackupOrchestrator, BackupRunError
from sealback.config import SOURCE_TYPES, enabled_sources, load_config
from sealback.errors import ConfigurationError
from sealback.scheduler import BackupScheduler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Encrypted multi-volume backups')
    parser.add_argument('--config', help='JSON config file merged over the defaults')
    parser.add_argument('--schedule', action='store_true',
                        help='run sources on their cron schedules instead of once')
    parser.add_argument('--source', action='append', choices=SOURCE_TYPES,
                        help='only back up sources of this type (repeatable)')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    sources = enabled_sources(config, args.source)
    if args.source and not sources:
        print(f"No configured source of type {', '.join(args.source)}", file=sys.stderr)
        return 1
    config = replace(config, sources=tuple(sources))

    logger = configure_logging(config.logger)

    if args.schedule:
        scheduler = BackupScheduler(lambda: BackupOrchestrator(config, logger=logger), config, logger=logger)
        signal.signal(signal.SIGINT, lambda *_: scheduler.shutdown())
        signal.signal(signal.SIGTERM, lambda *_: scheduler.shutdown())
        scheduler.start()
        return 0

    orchestrator = BackupOrchestrator(config, logger=logger)
    signal.signal(signal.SIGINT, lambda *_: orchestrator.stop())
    signal.signal(signal.SIGTERM, lambda *_: orchestrator.stop())

    try:
        asyncio.run(orchestrator.start())
    except BackupRunError as e:
        logger.error(str(e))
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
