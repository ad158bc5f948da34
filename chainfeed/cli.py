import argparse
import asyncio
import contextlib
import json
import logging
import signal
from typing import Optional

from aiohttp import web

from .api import FeedApi
from .config import AppConfig, load_config
from .models import SortBy, entities_to_list
from .service import FeedService
from .view import Pager

logger = logging.getLogger("chainfeed")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def serve(cfg: AppConfig, stop_event: Optional[asyncio.Event] = None) -> None:
    stop_event = stop_event or asyncio.Event()
    async with FeedService(cfg) as service:
        app = FeedApi(service).create_app()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=cfg.api_host, port=cfg.api_port)
        await site.start()
        logger.info("serving %d streams on %s:%d", len(cfg.streams), cfg.api_host, cfg.api_port)
        try:
            await stop_event.wait()
        finally:
            await runner.cleanup()


async def fetch_once(
    cfg: AppConfig,
    stream: str,
    owner: Optional[str] = None,
    sort: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
) -> int:
    async with FeedService(cfg) as service:
        query = service.query(stream, owner=owner)
        query.set_view(search=search, sort_by=SortBy.parse(sort))
        state = await query.run()
    if state.error is not None:
        logger.error("fetch failed: %s", state.error)
        return 1
    pager = Pager(limit or cfg.page_size)
    out = {
        "total": state.total,
        "hasMore": pager.has_more(state.total),
        "items": entities_to_list(pager.page(state.entities)),
    }
    print(json.dumps(out, indent=2))
    return 0


async def main_async(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    setup_logging(cfg.log_level)

    if args.command == "fetch":
        return await fetch_once(
            cfg, args.stream, owner=args.owner, sort=args.sort, search=args.search, limit=args.limit
        )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _on_stop() -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _on_stop)

    await serve(cfg, stop_event)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chainfeed: on-chain event feeds with enrichment")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="run the HTTP API (default)")

    fetch = sub.add_parser("fetch", help="fetch one stream and print it as JSON")
    fetch.add_argument("--stream", required=True, help="stream name from STREAMS")
    fetch.add_argument("--owner", default=None, help="only entities owned by this address")
    fetch.add_argument(
        "--sort",
        default="newest",
        choices=[s.value for s in SortBy],
        help="newest | oldest | by-id",
    )
    fetch.add_argument("--search", default=None, help="subject id substring")
    fetch.add_argument("--limit", type=int, default=None, help="page size (default: PAGE_SIZE)")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    if args.command is None:
        args.command = "serve"

    try:
        code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        code = 0
    except ValueError as e:
        raise SystemExit(f"invalid configuration: {e}") from e
    except KeyError as e:
        raise SystemExit(f"unknown stream: {e}") from e
    raise SystemExit(code)
