from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Optional

import httpx

from . import __version__
from .kernel.errors import SettingsError
from .kernel.settings import load_settings
from .util.obslog import setup_root_json_logging
from .util.uvicorn_loop import create_safe_event_loop


def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    overrides = {}
    if args.port is not None:
        if not 1 <= args.port <= 65535:
            raise SettingsError(f"--port must be an integer between 1 and 65535 (received: {args.port})")
        overrides["hook_server_port"] = args.port
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if overrides:
        settings = dataclasses.replace(settings, **overrides)

    setup_root_json_logging(component="panebridge", level=settings.log_level)

    from .daemon.runtime import BridgeRuntime

    async def _main() -> int:
        return await BridgeRuntime(settings).run_forever()

    with asyncio.Runner(loop_factory=create_safe_event_loop) as runner:
        return int(runner.run(_main()))


def _status(args: argparse.Namespace) -> int:
    port = args.port if args.port is not None else load_settings().hook_server_port
    try:
        resp = httpx.get(f"http://127.0.0.1:{port}/runtime-status", timeout=3.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"panebridge: not running ({e})", file=sys.stderr)
        return 1
    print(json.dumps(resp.json(), indent=2, ensure_ascii=False))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="panebridge", description="Chat <-> tmux agent bridge")
    parser.add_argument("--version", action="version", version=f"panebridge {__version__}")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the bridge in foreground")
    p_run.add_argument("--port", type=int, default=None, help="Hook server port")
    p_run.add_argument("--log-level", default=None, help="DEBUG|INFO|WARNING|ERROR")

    p_status = sub.add_parser("status", help="Print runtime status of a running bridge")
    p_status.add_argument("--port", type=int, default=None, help="Hook server port")

    args = parser.parse_args(argv)
    try:
        if args.cmd == "run":
            return _run(args)
        if args.cmd == "status":
            return _status(args)
    except SettingsError as e:
        print(f"panebridge: {e}", file=sys.stderr)
        return 2
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
