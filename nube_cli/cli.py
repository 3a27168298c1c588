"""Command-line interface for nube-cli"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import orjson
from loguru import logger

from . import __version__
from .api_client import NubeClient, decode_response
from .config import DEFAULT_AUTH_TIMEOUT, DEFAULT_BASE_URL, DEFAULT_CLIENT_NAME, env_access_token
from .exceptions import ConfigError, NubeError, StepOneComplete, UsageError
from .exit_codes import (
    EXIT_CANCELLED,
    EXIT_CODE_TABLE,
    EXIT_ERROR,
    EXIT_OK,
    exit_code_for,
    format_error,
)
from .logging_config import setup_logging
from .oauth import AuthorizeOptions, authorize
from .pagination import collect_all


def write_json(data: Any) -> None:
    sys.stdout.write(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode("utf-8"))
    sys.stdout.write("\n")
    sys.stdout.flush()


def parse_query(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ["key=value", ...] into a dict"""
    query: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise UsageError(f"invalid query parameter '{pair}' (expected key=value)")
        query[key] = value
    return query


def page_items(response) -> List[Any]:
    """Items of one list page (a non-list body counts as one item)"""
    data = decode_response(response)
    return data if isinstance(data, list) else [data]


def build_client(args: argparse.Namespace) -> NubeClient:
    """Create an API client from the environment token"""
    token, store_id = env_access_token()
    if not token:
        raise ConfigError(
            "no access token: set NUBE_ACCESS_TOKEN and NUBE_USER_ID (run `nube login` to get one)"
        )
    return NubeClient(store_id=store_id, access_token=token, base_url=args.base_url)


async def cmd_login(args: argparse.Namespace) -> int:
    if args.step and not args.remote:
        raise UsageError("--step requires --remote")

    options = AuthorizeOptions(
        timeout=args.timeout,
        client=args.client,
        broker_url=args.broker_url,
        manual=args.manual,
        remote=args.remote,
        step=args.step or 0,
        auth_url=args.auth_url or "",
    )
    try:
        token = await authorize(options)
    except StepOneComplete as e:
        write_json({"auth_url": e.url})
        logger.info("After authorizing, run again with --remote --step 2 --auth-url <redirect-url>")
        return EXIT_OK
    logger.success(f"Authorized store {token.account_id or '?'}")
    write_json(token.to_dict())
    return EXIT_OK


async def cmd_get(args: argparse.Namespace) -> int:
    query = parse_query(args.query)
    async with build_client(args) as client:
        if args.all:
            items = await collect_all(client, args.path, query, page_items)
            logger.info(f"Fetched {len(items)} items")
            write_json(items)
        else:
            response = await client.get(args.path, query)
            write_json(decode_response(response))
    return EXIT_OK


async def cmd_exit_codes(args: argparse.Namespace) -> int:
    write_json([{"code": code, "name": name, "description": desc} for code, name, desc in EXIT_CODE_TABLE])
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nube",
        description="Tienda Nube command-line client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", type=str, help="Log file path")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    login = subparsers.add_parser("login", help="Authorize and print an access token")
    login.add_argument(
        "--broker-url",
        default=os.environ.get("NUBE_AUTH_BROKER") or None,
        help="OAuth broker URL (env: NUBE_AUTH_BROKER)",
    )
    login.add_argument(
        "--timeout", type=float, default=DEFAULT_AUTH_TIMEOUT, help="Authorization timeout in seconds"
    )
    login.add_argument("--client", default=DEFAULT_CLIENT_NAME, help="OAuth client name")
    login.add_argument(
        "--manual", action="store_true", help="Print the authorize URL and paste the code (no browser or listener)"
    )
    login.add_argument("--remote", action="store_true", help="Two-step manual login for a machine without a browser")
    login.add_argument("--step", type=int, choices=[1, 2], help="Remote step: 1 prints the URL, 2 exchanges --auth-url")
    login.add_argument("--auth-url", help="Redirect URL (or bare code) copied from the browser")
    login.set_defaults(handler=cmd_login)

    get = subparsers.add_parser("get", help="GET a store-relative API path")
    get.add_argument("path", help="Path such as products or orders/123")
    get.add_argument(
        "-q", "--query", action="append", metavar="KEY=VALUE", help="Query parameter (repeatable)"
    )
    get.add_argument("--all", action="store_true", help="Follow pagination and fetch every page")
    get.add_argument(
        "--base-url",
        default=os.environ.get("NUBE_BASE_URL") or DEFAULT_BASE_URL,
        help="API base URL",
    )
    get.set_defaults(handler=cmd_get)

    exit_codes = subparsers.add_parser("exit-codes", help="Print the stable exit codes")
    exit_codes.set_defaults(handler=cmd_exit_codes)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    log_file = Path(args.log_file) if args.log_file else None
    setup_logging(verbose=args.verbose, log_file=log_file)

    async def run() -> int:
        try:
            return await args.handler(args)
        except NubeError as e:
            logger.error(format_error(e))
            return exit_code_for(e)
        except httpx.TransportError as e:
            logger.error(f"Network error: {e!r}")
            return exit_code_for(e)
        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            return EXIT_ERROR

    try:
        code = asyncio.run(run())
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        code = EXIT_CANCELLED

    sys.exit(code)


if __name__ == "__main__":
    main()
