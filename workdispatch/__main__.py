"""workdispatch CLI entry point."""

from __future__ import annotations

import argparse
import sys


def main(argv: list[str] | None = None) -> None:

    import importlib.metadata

    try:
        version = importlib.metadata.version("workdispatch")
    except importlib.metadata.PackageNotFoundError:
        version = "0.1.0"

    parser = argparse.ArgumentParser(
        prog="workdispatch",
        description="workdispatch: agentic dispatch runtime over per-store event logs",
    )
    # Global arguments
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {version}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.workdispatch/config.json)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server and dispatcher")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--log-file", default="log/workdispatch.log", help="Log file path")

    subparsers.add_parser("status", help="Check status of the running server")

    send_parser = subparsers.add_parser("send", help="Send a chat message to a store")
    send_parser.add_argument("store", help="Store key")
    send_parser.add_argument("conversation", help="Conversation id")
    send_parser.add_argument("message", help="Message text, e.g. 'server: what is on my board?'")

    args = parser.parse_args(argv)

    # Initialize config globally so later get_config() calls see the same instance
    from workdispatch.runtime.config import get_config
    get_config(args.config)

    if args.command == "serve":
        _run_serve(args)
    elif args.command == "status":
        sys.exit(_run_status(args))
    elif args.command == "send":
        sys.exit(_run_send(args))
    else:
        parser.print_help()
        sys.exit(1)


def _server_url() -> str:
    from workdispatch.runtime.config import get_config
    cfg = get_config()
    return f"http://{cfg.server_host}:{cfg.server_port}"


def _run_serve(args) -> None:
    """Start the HTTP server."""
    from workdispatch.logger import setup_logging
    from workdispatch.runtime.server import run_server

    setup_logging(args.log_file)
    run_server(host=args.host, port=args.port)


def _run_status(args) -> int:
    """Print server status; returns the process exit code."""
    import httpx

    url = _server_url()
    try:
        resp = httpx.get(f"{url}/api/status", timeout=5.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Server at {url}: offline ({e})")
        return 1

    data = resp.json()
    provider = data.get("provider", {})
    print(f"Server at {url}: {data.get('status')}")
    print(f"  Provider: {provider.get('mode')} (connected: {provider.get('connected')})")
    print(f"  Model:    {provider.get('model')}")
    print(f"  Stores:   {', '.join(data.get('stores', [])) or 'none'}")
    return 0


def _run_send(args) -> int:
    import httpx

    url = _server_url()
    try:
        resp = httpx.post(
            f"{url}/api/stores/{args.store}/messages",
            json={"conversation_id": args.conversation, "message": args.message},
            timeout=10.0,
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Failed to send message: {e}")
        return 1
    print(f"Sent message {resp.json().get('id')}")
    return 0


if __name__ == "__main__":
    main()
