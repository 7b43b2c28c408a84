"""Command-line interface for glbc."""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from .logging_config import setup_logging, get_logger

logger = get_logger(__name__)


def _load_config_or_exit(explicit: Optional[str]):
    """Find and load the configuration, exiting with status 1 on failure."""
    from .config import find_config_file, load_config

    try:
        config_path = find_config_file(explicit)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    try:
        controller_config = load_config(config_path)
    except Exception as e:
        logger.error("Failed to load configuration", config_path=str(config_path), error=str(e))
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if config_path:
        logger.info("Configuration loaded successfully",
                    config_path=str(config_path),
                    mode=controller_config.mode.value,
                    domain=controller_config.domain)
        print(f"Loaded configuration from {config_path}")
    else:
        logger.warning("No configuration file found, using defaults")
        print("No configuration file found. Using default configuration.")
    return controller_config


def serve_command(args: argparse.Namespace) -> None:
    """Start the API server with the controllers running in the background."""
    # Import heavy dependencies only when needed
    import uvicorn
    from .api import app, initialize_manager
    from .logging_config import log_function_entry, log_function_exit

    setup_logging(args.verbose)
    log_function_entry(logger, "serve_command", host=args.host, port=args.port, config=args.config, verbose=args.verbose)

    controller_config = _load_config_or_exit(args.config)

    logger.debug("Initializing controller manager")
    initialize_manager(controller_config)

    logger.info("Starting glbc server", host=args.host, port=args.port)
    print(f"Starting glbc server on {args.host}:{args.port}")

    log_function_exit(logger, "serve_command", status="starting_server")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info" if not args.verbose else "debug"
    )


async def run_manager(manager) -> None:
    """Run the controllers until SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, manager.stop)
    try:
        await manager.initialize()
        await manager.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def run_command(args: argparse.Namespace) -> None:
    """Run the controllers without the API server."""
    from .manager import ControllerManager

    setup_logging(args.verbose)
    controller_config = _load_config_or_exit(args.config)

    try:
        manager = ControllerManager(controller_config)
        asyncio.run(run_manager(manager))
    except Exception as e:
        logger.error("Controller manager failed", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def init_config_command(args: argparse.Namespace) -> None:
    """Generate a sample configuration file."""
    import yaml
    from .config import sample_config

    config_yaml = yaml.dump(sample_config(), default_flow_style=False, sort_keys=False)

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(config_yaml)
        print(f"Sample configuration written to {output_path}")
    else:
        print("Sample configuration:\n")
        print(config_yaml)


def validate_config_command(args: argparse.Namespace) -> None:
    """Validate a configuration file."""
    from .config import load_config

    config_path = Path(args.config)

    try:
        if not config_path.exists():
            raise FileNotFoundError(f"{config_path} does not exist")
        controller_config = load_config(config_path, environ={})
        print(f"✓ Configuration file {config_path} is valid")

        print(f"\nConfiguration summary:")
        print(f"  Mode: {controller_config.mode.value}")
        print(f"  Domain: {controller_config.domain}")
        print(f"  TLS: {'enabled (' + controller_config.tls_provider + ')' if controller_config.tls_enabled else 'disabled'}")
        print(f"  DNS provider: {controller_config.dns_provider}")
        print(f"  Host resolver: {controller_config.host_resolver}")
        print(f"  Workers: {controller_config.workers}")
        print(f"  Namespace: {controller_config.namespace or 'all'}")

        print(f"\nConfigured clusters:")
        print(f"  - root: {controller_config.root_cluster.name}")
        control = controller_config.control_cluster
        print(f"  - control: {control.name if control else controller_config.root_cluster.name}")

    except Exception as e:
        print(f"✗ Configuration file {config_path} is invalid: {e}", file=sys.stderr)
        sys.exit(1)


def allocate_host_command(args: argparse.Namespace) -> None:
    """Print a freshly allocated global hostname."""
    from .errors import ConfigError
    from .hostname import allocate

    domain = args.domain
    if not domain:
        domain = _load_config_or_exit(args.config).domain

    try:
        print(allocate(None, domain))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def version_command(args: argparse.Namespace) -> None:
    """Show version information."""
    from . import __version__
    print(f"glbc {__version__}")


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="glbc: global load balancer controller for federated ingresses",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Global options
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server and the controllers")
    serve_parser.add_argument(
        "--config", "-c",
        help="Configuration file path"
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)"
    )
    serve_parser.set_defaults(func=serve_command)

    run_parser = subparsers.add_parser("run", help="Run the controllers without the API server")
    run_parser.add_argument(
        "--config", "-c",
        help="Configuration file path"
    )
    run_parser.set_defaults(func=run_command)

    init_parser = subparsers.add_parser("init-config", help="Generate a sample configuration file")
    init_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)"
    )
    init_parser.set_defaults(func=init_config_command)

    validate_parser = subparsers.add_parser("validate-config", help="Validate a configuration file")
    validate_parser.add_argument(
        "--config", "-c",
        required=True,
        help="Configuration file path"
    )
    validate_parser.set_defaults(func=validate_config_command)

    allocate_parser = subparsers.add_parser("allocate-host", help="Print a new global hostname")
    allocate_parser.add_argument(
        "--domain", "-d",
        help="Base domain (default: from configuration)"
    )
    allocate_parser.add_argument(
        "--config", "-c",
        help="Configuration file path"
    )
    allocate_parser.set_defaults(func=allocate_host_command)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=version_command)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
