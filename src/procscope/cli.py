"""Command-line entry point: `procscope serve` and `procscope top`."""

import argparse
import os
import sys
from collections.abc import Sequence

import uvicorn

from procscope.config import Settings, load_settings
from procscope.logs import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="procscope", description="Process sampler with anomaly flagging.")
    parser.add_argument("-c", "--config", help="YAML settings file")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP/WebSocket server")
    serve.add_argument("--host", help="bind address")
    serve.add_argument("--port", type=int, help="bind port")

    top = sub.add_parser("top", help="run the terminal viewer")
    top.add_argument("--log-file", help="write logs here instead of discarding them")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if getattr(args, "host", None):
        settings.host = args.host
    if getattr(args, "port", None):
        settings.port = args.port
    return settings.validate()


def serve(settings: Settings) -> None:
    from procscope.server import create_app

    configure_logging(settings.log_level, json=settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level)


def top(settings: Settings, log_file: str | None) -> None:
    from procscope.app import main as run_viewer

    # Console logs would draw over the TUI.
    stream = open(log_file or os.devnull, "a", encoding="utf-8")
    try:
        configure_logging(settings.log_level, json=settings.log_json, file=stream)
        run_viewer(settings)
    finally:
        stream.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = apply_overrides(load_settings(args.config), args)
    except (OSError, ValueError) as exc:
        print(f"procscope: {exc}", file=sys.stderr)
        return 2

    if args.command == "serve":
        serve(settings)
    else:
        top(settings, args.log_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
