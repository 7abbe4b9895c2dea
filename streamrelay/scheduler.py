"""Scheduler: sweeps expired keyed prompts on an interval using APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from streamrelay.config import PromptCacheConfig
    from streamrelay.prompt_cache import PromptCache

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "prompt_cache_sweep"


def build_trigger(settings: PromptCacheConfig) -> IntervalTrigger:
    """Convert the cache settings into an APScheduler IntervalTrigger."""
    return IntervalTrigger(seconds=settings.sweep_interval_seconds)


async def sweep_prompt_cache(cache: PromptCache) -> None:
    """Drop keyed prompts nobody came back for."""
    try:
        removed = cache.sweep_expired()
        logger.debug(f"Prompt cache sweep removed {removed} entries")
    except Exception as e:
        logger.error(f"Prompt cache sweep failed: {e}", exc_info=True)


def setup_scheduler(settings: PromptCacheConfig, cache: PromptCache) -> AsyncIOScheduler:
    """Build the scheduler that keeps the keyed prompt cache bounded."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep_prompt_cache,
        trigger=build_trigger(settings),
        args=[cache],
        id=SWEEP_JOB_ID,
        replace_existing=True,
    )
    logger.info(
        f"Scheduled prompt cache sweep every {settings.sweep_interval_seconds}s "
        f"(ttl={settings.ttl_seconds}s)"
    )
    return scheduler
