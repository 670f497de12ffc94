"""
Command-line interface for the portal core.

Commands:
- serve: Run the HTTP API under uvicorn
- generate-key: Print a fresh base64 signing key
- config: Show or validate the environment configuration
"""

import argparse
import base64
import secrets
import sys
from typing import Optional

from . import __version__
from .config import MIN_SIGNING_KEY_BYTES, load_config_from_env
from .exceptions import ConfigurationError


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle the 'serve' command."""
    import uvicorn

    from .api import create_app

    config = load_config_from_env(env_file=args.env_file)
    try:
        app = create_app(config)
    except ConfigurationError as e:
        print(f"Error: {e.message} ({e.code})", file=sys.stderr)
        return 1

    # uvicorn spells it "warning"
    log_level = "warning" if config.logging.level == "warn" else config.logging.level
    uvicorn.run(app, host=args.host, port=args.port, log_level=log_level)
    return 0


def cmd_generate_key(args: argparse.Namespace) -> int:
    """Handle the 'generate-key' command."""
    print(base64.b64encode(secrets.token_bytes(args.bytes)).decode("ascii"))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config = load_config_from_env(env_file=args.env_file)

    if args.action == "show":
        print(f"Environment: {config.environment}")
        print(f"  Signing key: {'set' if config.signing.key else 'missing'} ({config.signing.key_encoding})")
        print(f"  KV store: {config.kv.url if config.kv.is_configured else 'not configured (memory)'}")
        print(f"  Webhook secret: {'set' if config.tracking.webhook_secret else 'missing'}")
        print(f"  Third-party id: {config.authorization.third_party_id}")
        print(f"  Callback URL: {config.authorization.callback_url}")
        print(f"  Attribution window: {config.tracking.attribution_window_days} days")
        print(f"  Log level: {config.logging.level} ({config.logging.output_format})")
        return 0

    if args.action == "validate":
        try:
            config.validate()
        except ConfigurationError as e:
            print(f"Error: {e.message} ({e.code})", file=sys.stderr)
            return 1
        print("Configuration is valid.")
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="portal-core",
        description="Click attribution, session authorization and data proxy API",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'serve' command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API",
    )
    serve_parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port", "-p",
        type=int,
        default=8000,
        help="Port to listen on (default: 8000)",
    )
    serve_parser.add_argument(
        "--env-file", "-e",
        help="Optional .env file to load",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # 'generate-key' command
    key_parser = subparsers.add_parser(
        "generate-key",
        help="Print a random base64 signing key",
    )
    key_parser.add_argument(
        "--bytes", "-b",
        type=int,
        default=MIN_SIGNING_KEY_BYTES,
        help=f"Key length in bytes (default: {MIN_SIGNING_KEY_BYTES})",
    )
    key_parser.set_defaults(func=cmd_generate_key)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--env-file", "-e",
        help="Optional .env file to load",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "generate-key" and args.bytes < MIN_SIGNING_KEY_BYTES:
        parser.error(f"--bytes must be at least {MIN_SIGNING_KEY_BYTES}")

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
