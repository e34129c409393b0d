from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from vibeproxy.core.config.settings import get_settings
from vibeproxy.core.exceptions import ProxyBindError
from vibeproxy.core.usage.ranges import UsageRange


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="vibeproxy", description="Thinking-aware LLM reverse proxy.")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the proxy on the loopback interface.")
    serve.add_argument("--host", default=None, help="Loopback address to bind (default 127.0.0.1).")
    serve.add_argument("--port", type=int, default=None, help="Proxy port (default 8317).")
    serve.add_argument("--backend", default=None, help="Local backend base URL (default http://127.0.0.1:8318).")

    usage = subparsers.add_parser("usage", help="Print the usage dashboard as JSON.")
    usage.add_argument(
        "--range",
        dest="usage_range",
        default=UsageRange.LAST_7_DAYS.value,
        help="One of 24h, 7d, 30d, all.",
    )
    usage.add_argument("--provider", default=None)
    usage.add_argument("--model", default=None)
    usage.add_argument("--account", default=None)

    parser.set_defaults(command="serve", host=None, port=None, backend=None)
    return parser.parse_args(argv)


def _apply_overrides(args: argparse.Namespace) -> None:
    overrides = {
        "VIBEPROXY_PROXY_HOST": getattr(args, "host", None),
        "VIBEPROXY_PROXY_PORT": getattr(args, "port", None),
        "VIBEPROXY_BACKEND_BASE_URL": getattr(args, "backend", None),
    }
    for key, value in overrides.items():
        if value is not None:
            os.environ[key] = str(value)
    get_settings.cache_clear()


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def _serve() -> None:
    from vibeproxy.main import app
    from vibeproxy.modules.proxy.server import ProxyServer

    settings = get_settings()
    server = ProxyServer(app, host=settings.proxy_host, port=settings.proxy_port)
    await server.serve_forever()


async def _print_usage(args: argparse.Namespace) -> None:
    from vibeproxy.core.clients.http import close_http_client, init_http_client
    from vibeproxy.core.usage.types import UsageEventFilter
    from vibeproxy.db.session import close_db, init_db
    from vibeproxy.dependencies import get_dashboard_service

    await init_db()
    await init_http_client()
    try:
        filters = UsageEventFilter(provider=args.provider, model=args.model, account_key=args.account)
        dashboard = await get_dashboard_service().get_usage_dashboard(args.usage_range, filters)
    finally:
        try:
            await close_http_client()
        finally:
            await close_db()
    print(dashboard.model_dump_json(by_alias=True, indent=2))


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    _apply_overrides(args)
    _configure_logging()

    if args.command == "usage":
        asyncio.run(_print_usage(args))
        return

    try:
        asyncio.run(_serve())
    except ProxyBindError as exc:
        print(f"vibeproxy: {exc.message}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
