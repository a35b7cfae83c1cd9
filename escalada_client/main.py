"""
Escalada client entrypoint (`escalada-client` console script).

Subcommands:
- watch --box N [--box M ...]: authenticated per-box streams; logs box state + live ranking on change
- public: read-only public feed (stream + polling fallback); logs every box's ranking on change

Both run until interrupted.
"""

# -------------------- Standard library imports --------------------
import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

# -------------------- Third-party imports --------------------
from dotenv import load_dotenv

# -------------------- Local application imports --------------------
from escalada_client.config import Settings, get_settings
from escalada_client.live import LiveClient
from escalada_client.public import PublicFeed
from escalada_client.ranking import RankingRow, format_seconds, visible_times
from escalada_client.store import BoxState

logger = logging.getLogger("escalada_client")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO", log_file: Optional[str] = "escalada_client.log") -> None:
    """Log to stdout (terminal) and also to a local file (useful on event day)."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def format_ranking(box: BoxState, rows: Sequence[RankingRow]) -> str:
    times = visible_times(rows, box.time_criterion_enabled)
    lines = [f"Box {box.box_id} {box.categorie or ''} (route {box.route_index}/{box.routes_count or 1})".rstrip()]
    for row in rows:
        scores = " ".join("-" if s is None else f"{s:g}" for s in row.scores)
        line = f"  {row.rank:>3}. {row.name:<24} {scores:<20} total={row.total:.3f}"
        if row.name in times:
            line += " time=" + "/".join(format_seconds(t) for t in times[row.name])
        lines.append(line)
    return "\n".join(lines)


# ==================== COMMANDS ====================
async def run_watch(settings: Settings, box_ids: Sequence[int]) -> None:
    async with LiveClient(settings) as client:

        def on_change(box_id: int, box: Optional[BoxState]) -> None:
            if box is None:
                logger.info("Box %s cleared", box_id)
                return
            logger.info(
                "Box %s: timer=%s climber=%s hold=%s/%s version=%s%s",
                box_id,
                box.timer_state,
                box.current_climber or "-",
                box.hold_count,
                box.holds_count,
                box.box_version,
                " (optimistic)" if box.optimistic else "",
            )
            rows = client.rankings(box_id)
            if rows:
                logger.info("\n%s", format_ranking(box, rows))

        client.store.subscribe(on_change)
        for box_id in box_ids:
            client.watch(box_id)
        await asyncio.Event().wait()


async def run_public(settings: Settings) -> None:
    async with PublicFeed(settings) as feed:

        def on_change(box_id: int, box: Optional[BoxState]) -> None:
            if box is None:
                logger.info("Box %s removed from public feed", box_id)
                return
            rows = feed.rankings().get(box_id, [])
            logger.info("\n%s", format_ranking(box, rows))

        feed.store.subscribe(on_change)
        await asyncio.Event().wait()


# ==================== CLI ====================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="escalada-client",
        description="Follow live Escalada boxes and rankings.",
    )
    parser.add_argument("--api-base", help="API base URL (default: ESCALADA_API_BASE or http://localhost:8000/api)")
    parser.add_argument("--token", help="Bearer token for authenticated streams (default: ESCALADA_AUTH_TOKEN)")
    parser.add_argument("--log-level", help="Logging level (default: ESCALADA_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Stream one or more boxes over the authenticated channel")
    watch.add_argument("--box", dest="boxes", type=int, action="append", required=True, help="Box id (repeatable)")

    sub.add_parser("public", help="Follow the public rankings feed")
    return parser


def cli(argv: Optional[Sequence[str]] = None) -> int:
    # Load `.env` early; Settings also reads it but plain env vars must be visible too.
    load_dotenv()
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.api_base:
        overrides["api_base"] = args.api_base
        # Re-derive the stream base from the overridden API base.
        overrides["ws_base"] = ""
    if args.token:
        overrides["auth_token"] = args.token
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = Settings(**{**get_settings().model_dump(), **overrides}) if overrides else get_settings()

    configure_logging(settings.log_level, settings.log_file)
    logger.info("Escalada client starting (%s, api=%s)", args.command, settings.api_base)

    try:
        if args.command == "watch":
            asyncio.run(run_watch(settings, args.boxes))
        else:
            asyncio.run(run_public(settings))
    except KeyboardInterrupt:
        logger.info("Escalada client stopped")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
