"""Command line interface for the s3-backup tool.

Usage::

    s3-backup [--config FILE] [--savedir DIR] [-v] {backup,restore} SERVICE [options] STORE [options]
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Optional, Sequence

from s3backup.commands import ACTIONS, SERVICES, STORE_ALIASES, STORES, build_operations
from s3backup.config import (
    GLOBAL_OPTIONS,
    RESTORE_KEY,
    SERVICE_OPTIONS,
    STORE_OPTIONS,
    ConfigError,
    ConfigResolver,
    Option,
)
from s3backup.services import ArchiveError, ExternalToolError
from s3backup.stores import StoreTransferError

LOGGER = logging.getLogger("s3backup")

OPERATION_ERRORS = (ConfigError, ExternalToolError, ArchiveError, StoreTransferError, OSError)


def _add_options(parser: argparse.ArgumentParser, options: Sequence[Option]) -> None:
    for option in options:
        help_text = option.help
        if option.env:
            help_text += f" [${option.env}]"
        if option.boolean:
            parser.add_argument(
                option.flag,
                dest=option.name,
                action=argparse.BooleanOptionalAction,
                default=None,
                help=help_text,
            )
        else:
            parser.add_argument(option.flag, dest=option.name, default=None, help=help_text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="s3-backup",
        description="Back up databases, Gogs and directories to object storage or a local directory.",
    )
    _add_options(parser, GLOBAL_OPTIONS)
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")

    actions = parser.add_subparsers(dest="action")
    for action in ACTIONS:
        action_parser = actions.add_parser(action, help=f"{action} a service")
        services = action_parser.add_subparsers(dest="service", metavar="SERVICE", required=True)
        for service in SERVICES:
            service_parser = services.add_parser(service, help=f"connect to {service} service")
            _add_options(service_parser, SERVICE_OPTIONS[service])
            stores = service_parser.add_subparsers(dest="store", metavar="STORE", required=True)
            for store in STORES:
                aliases = [alias for alias, target in STORE_ALIASES.items() if target == store]
                store_parser = stores.add_parser(store, aliases=aliases, help=f"use the {store} store")
                _add_options(store_parser, STORE_OPTIONS[store])
                if action == "restore":
                    _add_options(store_parser, (RESTORE_KEY,))
    return parser


def configure_logging(level: int) -> None:
    if level >= 2:
        log_level = logging.DEBUG
    elif level == 1:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING
    logging.basicConfig(level=log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def create_resolver(args: argparse.Namespace) -> ConfigResolver:
    try:
        return ConfigResolver.from_sources(vars(args))
    except ConfigError as exc:
        print(f"Error reading configuration: {exc}", file=sys.stderr)
        sys.exit(1)


def handle_operation(args: argparse.Namespace, resolver: ConfigResolver) -> None:
    store = STORE_ALIASES.get(args.store, args.store)
    operation = build_operations()[(args.service, store)]
    try:
        key = resolver.value(RESTORE_KEY) if args.action == "restore" else None
        result = operation.run(args.action, resolver, key=key)
    except OPERATION_ERRORS as exc:
        LOGGER.debug("%s %s failed.", args.action, args.service, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.action == "backup":
        print(f"Backup stored as '{result}'.")
    else:
        print(f"Restored from '{result}'.")


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.action:
        parser.print_help()
        return

    configure_logging(args.verbose)
    resolver = create_resolver(args)
    handle_operation(args, resolver)


if __name__ == "__main__":
    main()
