"""Run the vendor pipeline outside the API process.

    python -m vendor_pipeline.scripts.run_pipeline          # one cycle
    python -m vendor_pipeline.scripts.run_pipeline --loop   # poll forever
"""

import argparse
import asyncio
import logging

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.database import AsyncSessionLocal, engine
from vendor_pipeline.dependencies import PipelineServices, build_collaborators
from vendor_pipeline.services.pipeline_service import start_pipeline_loop

logger = logging.getLogger(__name__)


async def run(loop: bool, interval: int) -> None:
    services = PipelineServices(build_collaborators(settings), AsyncSessionLocal, engine)
    try:
        if loop:
            await start_pipeline_loop(services.pipeline, interval=interval)
        else:
            report = await services.pipeline.run_cycle()
            print(report.model_dump_json(indent=2))
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the vendor acquisition pipeline")
    parser.add_argument("--loop", action="store_true", help="keep polling until interrupted")
    parser.add_argument(
        "--interval", type=int, default=settings.PIPELINE_POLL_INTERVAL,
        help="seconds between cycles with --loop",
    )
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(args.loop, args.interval))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
