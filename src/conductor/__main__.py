"""Conductor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from conductor.config import load_config
from conductor.sandbox.formatting import FORMATTERS


def _read_code(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def _permissions_from_args(args) -> dict | None:
    if args.allow_all:
        return {"all": True}
    spec: dict = {}
    for capability in ("net", "read", "write", "env"):
        if getattr(args, f"allow_{capability}"):
            spec[capability] = True
    for grant in args.grant:
        capability, _, scope = grant.partition("=")
        if not scope:
            raise SystemExit(f"Error: --grant expects CAPABILITY=SCOPE, got {grant!r}")
        current = spec.get(capability)
        if current is True:
            continue
        spec[capability] = [*(current or []), scope]
    return spec or None


async def _run(args) -> int:
    from conductor.service import Conductor

    try:
        code = _read_code(args.file)
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 2

    def log_line(level: str, message: str) -> None:
        if args.stream:
            print(message, file=sys.stderr)

    permissions = _permissions_from_args(args)
    async with Conductor(load_config(args.config)) as conductor:
        result = await conductor.run(
            code,
            timeout_ms=args.timeout,
            dependencies=args.dependency,
            permissions=permissions,
            log=log_line,
        )

    print(FORMATTERS[args.format](result))
    return 0 if result.ok else 1


async def _servers(args) -> int:
    from conductor.service import Conductor

    async with Conductor(load_config(args.config)) as conductor:
        servers = await conductor.list_servers()

    if not servers:
        print("No tool servers configured")
        return 0
    print(json.dumps([s.model_dump() for s in servers], indent=2))
    return 0


async def _tools(args) -> int:
    from conductor.errors import ProxyError
    from conductor.service import Conductor

    async with Conductor(load_config(args.config)) as conductor:
        try:
            details = await conductor.get_tool_details(args.server, args.tool or None)
        except ProxyError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1

    print(json.dumps([d.model_dump() for d in details], indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor: sandboxed Deno code execution with MCP tool access",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to conductor.yaml (default: built-in defaults + MCP_CONDUCTOR_* env)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conductor run
    run_parser = subparsers.add_parser("run", help="Execute TypeScript/JavaScript in the sandbox")
    run_parser.add_argument("file", nargs="?", default="-", help="Source file, or - for stdin")
    run_parser.add_argument("--timeout", type=int, default=None, help="Timeout in milliseconds")
    run_parser.add_argument(
        "--dependency",
        action="append",
        default=[],
        help="npm:/jsr: specifier to install first (repeatable)",
    )
    for capability in ("net", "read", "write", "env"):
        run_parser.add_argument(
            f"--allow-{capability}",
            action="store_true",
            help=f"Grant unrestricted {capability} access",
        )
    run_parser.add_argument(
        "--grant",
        action="append",
        default=[],
        metavar="CAP=SCOPE",
        help="Grant one scoped capability, e.g. net=api.example.com (repeatable)",
    )
    run_parser.add_argument("--allow-all", action="store_true", help="Grant every capability")
    run_parser.add_argument(
        "--format",
        default="json",
        choices=sorted(FORMATTERS),
        help="Result format (default: json)",
    )
    run_parser.add_argument(
        "--stream", action="store_true", help="Echo program output to stderr as it arrives"
    )

    # conductor servers
    subparsers.add_parser("servers", help="List configured tool servers")

    # conductor tools
    tools_parser = subparsers.add_parser("tools", help="Show tool schemas for one server")
    tools_parser.add_argument("server", help="Tool server name")
    tools_parser.add_argument(
        "--tool", action="append", default=[], help="Only this tool (repeatable)"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers = {"run": _run, "servers": _servers, "tools": _tools}
    sys.exit(asyncio.run(handlers[args.command](args)))


if __name__ == "__main__":
    main()
