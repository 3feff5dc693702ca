"""acp-remote CLI entry point."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from acp_remote.config import list_agents, load_remote_config


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # verbose lets the RPC traces through even when the root level is higher
    logging.getLogger("acp_remote").setLevel(logging.DEBUG if verbose else logging.INFO)


def _serve(args: argparse.Namespace) -> None:
    config = load_remote_config(remote_config_path=args.config)
    updates = {}
    if args.host:
        updates["bind_host"] = args.host
    if args.port:
        updates["port"] = args.port
    if updates:
        config = config.model_copy(update=updates)

    _configure_logging(args.log_level, config.verbose)

    import uvicorn

    from acp_remote.server import create_app

    app = create_app(config)
    uvicorn.run(app, host=config.bind_host, port=config.port, log_level=args.log_level.lower())


def _agents(args: argparse.Namespace) -> None:
    config = load_remote_config(remote_config_path=args.config)
    catalogue = list_agents(config.acp_config_path)
    if catalogue is None:
        print(f"Error: ACP config not found: {config.acp_config_path}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps({"agents": catalogue}, indent=2))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="acp-remote",
        description="acp-remote: run ACP coding agents behind a WebSocket with git-backed sessions",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start the WebSocket server")
    serve_parser.add_argument("--host", help="Host to bind to (default: bindHost setting or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: port setting or 3011)")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Remote-run settings file (default: ACP_REMOTE_CONFIG or acp-remote.json next to acp.json)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    agents_parser = subparsers.add_parser("agents", help="List the configured agents as JSON")
    agents_parser.add_argument("--config", type=Path, default=None, help="Remote-run settings file")

    args = parser.parse_args(argv)

    if args.command == "agents":
        _agents(args)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _serve(args)


if __name__ == "__main__":
    main()
