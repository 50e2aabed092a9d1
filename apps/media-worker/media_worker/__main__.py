"""Media worker entry point.

Usage:
    python -m media_worker                       # thumbnails + frames, forever
    python -m media_worker --kind frames --once  # drain the frames backlog and exit
    python -m media_worker --kind thumbnail --capture-id 42
"""

import argparse
import asyncio
import logging

from cleo_shared.config.settings import get_settings
from cleo_shared.db.engine import close_engine, get_session_factory
from cleo_shared.errors import PipelineError
from cleo_shared.models.media import MediaKind, OutcomeStatus
from cleo_shared.storage import LocalObjectStore

from media_worker.claimer import MediaClaimer
from media_worker.processors import create_processors
from media_worker.worker import MediaWorker

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="media_worker", description="Cleo media processing worker")
    parser.add_argument(
        "--kind",
        choices=[k.value for k in MediaKind] + ["all"],
        default="all",
        help="processing kind to run (default: all)",
    )
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--capture-id", type=int, help="process one capture and exit")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    kinds = list(MediaKind) if args.kind == "all" else [MediaKind(args.kind)]
    storage = LocalObjectStore(settings.media_base_path)
    claimer = MediaClaimer(get_session_factory(), create_processors(storage, settings), settings)

    try:
        if args.capture_id is not None:
            exit_code = 0
            for kind in kinds:
                try:
                    outcome = await claimer.claim_and_process(kind, args.capture_id)
                except PipelineError as e:
                    logger.error("Capture %s (%s): %s", args.capture_id, kind.value, e)
                    exit_code = 1
                    continue
                if outcome is None:
                    logger.info("Capture %s (%s) is busy", args.capture_id, kind.value)
                else:
                    logger.info("Capture %s (%s): %s", args.capture_id, kind.value, outcome.status.value)
                    if outcome.status is not OutcomeStatus.DONE:
                        exit_code = 1
            return exit_code

        await MediaWorker(claimer, kinds, settings).run(once=args.once)
        return 0
    finally:
        await close_engine()


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
