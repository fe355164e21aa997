"""shellcache - Offline shell cache and network-first proxy for the TopView dashboard."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None
# Proxy being started or served, stopped by the same signal handlers
_proxy = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()
    if _proxy is not None:
        _proxy.request_shutdown()


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - install the worker and start the proxy."""
    global _shutdown_event, _proxy

    _setup_logging(args.verbose)

    logger.info("shellcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .cache_store import CacheStorage, CacheStoreError, init_store
    from .config import ConfigError, load_config
    from .proxy import ProxyError, ProxyServer
    from .worker import create_worker

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
        logger.info("Origin %s, cache '%s' with %d shell assets", config.origin.url, config.cache.name, len(config.asset_urls))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Open cache store
    try:
        store_conn = init_store(config.cache.path)
        logger.info("Cache store opened at %s", config.cache.path)
    except CacheStoreError as e:
        logger.error("Cache store error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    storage = CacheStorage(store_conn)
    worker = create_worker(config, storage)
    proxy = ProxyServer(config, worker, storage)
    _proxy = proxy

    try:
        # 4. Install, activate and serve
        try:
            proxy.start()
        except ProxyError as e:
            logger.error("Failed to start proxy server: %s", e)
            sys.exit(1)

        logger.info("Proxy running (worker %s), waiting for shutdown signal...", worker.state.value)

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup
        logger.info("Shutting down components...")

        proxy.stop()

        store_conn.close()
        logger.info("Cache store closed")

        logger.info("Shutdown complete")


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - populate the shell cache once."""
    _setup_logging(args.verbose)

    from .cache_store import CacheStorage, CacheStoreError, init_store
    from .config import ConfigError, load_config
    from .worker import InstallFailure, create_worker

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Open cache store
    try:
        conn = init_store(config.cache.path)
    except CacheStoreError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 3. Run the install lifecycle event
    try:
        worker = create_worker(config, CacheStorage(conn))
        worker.install()
        print(f"Installed {len(worker.asset_urls)} shell asset(s) into '{config.cache.name}'.")
    except InstallFailure as e:
        print(f"Error: Install failed - {e}")
        sys.exit(1)
    finally:
        conn.close()


def _cmd_list(args: argparse.Namespace) -> None:
    """Execute the list command - show cache namespaces in the store."""
    from pathlib import Path

    from .cache_store import CacheStorage, CacheStoreError, init_store
    from .config import ConfigError, load_config

    # 1. Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Validate store exists
    if not Path(config.cache.path).exists():
        print(f"Error: Cache store not found at {config.cache.path}")
        sys.exit(1)

    # 3. List namespaces
    try:
        conn = init_store(config.cache.path)
        try:
            storage = CacheStorage(conn)
            names = storage.keys()
            if not names:
                print("No cache namespaces.")
            for name in names:
                marker = "current" if name == config.cache.name else "orphaned"
                namespace = storage.open(name)
                print(f"{name} ({marker}): {namespace.count()} entries")
                if args.entries:
                    for url in namespace.keys():
                        print(f"  {url}")
        finally:
            conn.close()
    except CacheStoreError as e:
        print(f"Error: {e}")
        sys.exit(1)


def main() -> None:
    """Main entry point for the shellcache package."""
    parser = argparse.ArgumentParser(
        description="shellcache - Offline shell cache and network-first proxy"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"shellcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install the shell cache and start the proxy (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Install subcommand
    install_parser = subparsers.add_parser(
        "install",
        help="Populate the shell cache from the origin and exit",
    )
    install_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    install_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    install_parser.set_defaults(func=_cmd_install)

    # List subcommand
    list_parser = subparsers.add_parser(
        "list",
        help="List cache namespaces and their entry counts",
    )
    list_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    list_parser.add_argument(
        "--entries",
        action="store_true",
        help="Also list the URLs stored in each namespace",
    )
    list_parser.set_defaults(func=_cmd_list)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
