"""
=========================================================
Command-line entry point for the PostgreSQL bulk engine.
=========================================================

The bulk engine is a library; this CLI covers the checks an operator
runs before wiring it into an application:

    - Database connectivity (utils.database_utils)
    - Metadata inspection: build and freeze the mapping snapshot of a
      declarative context and print what the engine will use for every
      entity (table, columns, keys, references, timeout)

Usage:
    # Check the configured PostgreSQL connection
    python main.py --verify-connection

    # Print the mapping snapshot of a declarative base
    python main.py --inspect myapp.models:Base

    # Both, with DEBUG logging
    python main.py --verify-connection --inspect myapp.models:Base --verbose

Example:
    >>> from main import load_context, describe_mappings
    >>>
    >>> cache = MetadataCache()
    >>> cache.register(load_context('myapp.models:Base'))
    >>> cache.freeze()
    >>> for line in describe_mappings(cache):
    ...     print(line)
"""

import argparse
import importlib
import logging
import sys
from typing import Any, List, Optional

# Core infrastructure
from core.config import config
from core.exceptions import BulkOperationError
from core.logger import get_logger

# Table metadata
from models.mappings import MetadataCache
from models.timeouts import TimeoutRegistry

# Database connectivity
from utils.database_utils import verify_connection

logger = get_logger(__name__)


class CLIError(Exception):
    """Exception raised for invalid command-line input."""
    pass


def load_context(target: str) -> Any:
    """
    Import a declarative context given as ``module:attribute``.

    Args:
        target: e.g. ``myapp.models:Base``

    Returns:
        The imported declarative base or registry

    Raises:
        CLIError: Malformed target, missing module or attribute
    """
    module_name, sep, attribute = target.partition(':')
    if not sep or not module_name or not attribute:
        raise CLIError(f"Expected module:attribute, got '{target}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CLIError(f"Cannot import module '{module_name}': {e}") from e

    context = module
    for part in attribute.split('.'):
        try:
            context = getattr(context, part)
        except AttributeError:
            raise CLIError(f"Module '{module_name}' has no attribute '{attribute}'") from None
    return context


def describe_mappings(cache: MetadataCache, timeouts: Optional[TimeoutRegistry] = None) -> List[str]:
    """
    Render the frozen mapping snapshot as printable lines.

    Args:
        cache: Frozen metadata cache
        timeouts: Registry used to show each entity's timeout

    Returns:
        One header line per entity followed by its column lines
    """
    timeouts = timeouts or TimeoutRegistry.from_config(config.bulk)
    lines = []
    for context in cache.contexts():
        mappings = cache.get_mappings(context)
        for entity in sorted(mappings, key=lambda e: e.__name__):
            mapping = mappings[entity]
            key = ', '.join(col.name for col in mapping.primary_key) or '(keyless)'
            lines.append(
                f"{entity.__name__} -> {mapping.qualified_name} "
                f"[key: {key}] [timeout: {timeouts.timeout_for(entity, context)}s]"
            )
            for col in mapping.columns:
                flags = []
                if col.is_primary_key:
                    flags.append('pk')
                if col.is_identity:
                    flags.append('identity')
                if col.is_computed:
                    flags.append('computed')
                if not col.nullable:
                    flags.append('not null')
                suffix = f" ({', '.join(flags)})" if flags else ""
                lines.append(f"    {col.ordinal}: {col.name} {col.sql_type}{suffix}")
            for ref in mapping.referenced_by:
                lines.append(f"    <- referenced by {ref.table}.{ref.column}")
    return lines


def run_verify_connection() -> bool:
    """Check connectivity with the configured settings."""
    logger.info(f"📍 PostgreSQL Server: {config.db_host}:{config.db_port}/{config.db_name}")
    logger.info(f"👤 User: {config.db_user}")
    logger.info("⏳ Testing database connection...")

    success, message = verify_connection()
    if success:
        logger.info(f"✅ {message}")
    else:
        logger.error(f"❌ {message}")
    return success


def run_inspect(target: str) -> MetadataCache:
    """Build, freeze and print the mapping snapshot of ``target``."""
    logger.info(f"🔍 Inspecting {target}...")
    cache = MetadataCache()
    cache.register(load_context(target))
    cache.freeze()

    for line in describe_mappings(cache):
        logger.info(line)
    return cache


def main(argv: Optional[List[str]] = None) -> int:
    """
    Command-line interface for the bulk engine.

    Exit Codes:
        0: Success
        1: Error
        130: User interrupt (Ctrl+C)
    """
    parser = argparse.ArgumentParser(
        description="PostgreSQL bulk engine - connectivity and metadata checks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check the configured connection
  python main.py --verify-connection

  # Print the mapping snapshot of a declarative base
  python main.py --inspect myapp.models:Base
        """
    )

    parser.add_argument(
        '--verify-connection',
        action='store_true',
        help='Check connectivity to the configured PostgreSQL server'
    )
    parser.add_argument(
        '--inspect',
        metavar='MODULE:BASE',
        help='Build and print the mapping snapshot of a declarative base'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging (DEBUG level)'
    )

    args = parser.parse_args(argv)

    # Set logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.verify_connection and not args.inspect:
        parser.print_help()
        logger.warning("⚠️  No operation specified. Use --verify-connection or --inspect.")
        return 1

    try:
        if args.verify_connection and not run_verify_connection():
            return 1

        if args.inspect:
            run_inspect(args.inspect)

        return 0

    except (CLIError, BulkOperationError) as e:
        logger.error(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("\n⚠️  Operation interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"\n❌ Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
