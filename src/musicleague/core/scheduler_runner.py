"""Scheduled round-deadline sweep.

Provides ``sweep_round_deadlines`` which is invoked by APScheduler on the
cron cadence defined by ``settings.musicleague_sweep_cron``. Each league is
swept in its own session so a failure in one league never rolls back
transitions in another.

Errors are logged but never propagated so the scheduler keeps running.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from musicleague.core.clock import resolve_now
from musicleague.core.errors import DomainError
from musicleague.core.rounds import sweep_deadlines
from musicleague.db.engine import get_session
from musicleague.db.repository import Repository

logger = logging.getLogger(__name__)


async def _leagues_with_open_rounds(engine: AsyncEngine) -> list[str]:
    async with get_session(engine) as session:
        rounds = await Repository(session).list_rounds_due_for_sweep()
    return sorted({r.league_id for r in rounds})


async def sweep_round_deadlines(
    engine: AsyncEngine,
    empty_round_policy: str = "hold",
    now: datetime | None = None,
) -> int:
    """Advance every round whose deadline has passed. Returns the number moved."""
    now = resolve_now(now)
    try:
        league_ids = await _leagues_with_open_rounds(engine)
    except SQLAlchemyError:
        logger.exception("sweep_round_deadlines_list_error")
        return 0

    moved = 0
    for league_id in league_ids:
        try:
            async with get_session(engine) as session:
                transitions = await sweep_deadlines(
                    Repository(session),
                    now=now,
                    empty_round_policy=empty_round_policy,
                    league_id=league_id,
                )
        except (DomainError, SQLAlchemyError):
            logger.exception("sweep_round_deadlines_error league=%s", league_id)
            continue
        except Exception:  # last-resort handler keeps the scheduler alive
            logger.exception("sweep_round_deadlines_unexpected league=%s", league_id)
            continue
        moved += len(transitions)

    if moved:
        logger.info("sweep_round_deadlines_done leagues=%d moved=%d", len(league_ids), moved)
    return moved
