# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Core - Driver helpers for the step functions.

In production an external orchestrator calls one step per request or
cron tick. run_until_done() is the same loop compressed into one call,
for scripts, tests and the bundled example.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Protocol, Tuple

import structlog

from stepback.exceptions import ProgressError

logger = structlog.get_logger()

DEFAULT_MAX_STEPS = 100_000


class StepOutcome(Protocol):
    """Anything a step returns: a progress record or a step result."""

    done: bool


StepDriver = Callable[[], Awaitable[StepOutcome]]


@dataclass
class EngineStats:
    """Diagnostics for one run_until_done() loop."""

    steps: int = 0
    elapsed_seconds: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "steps": self.steps,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


async def run_until_done(
    step: StepDriver,
    max_steps: int = DEFAULT_MAX_STEPS,
    stats: EngineStats | None = None,
) -> Tuple[Any, int]:
    """
    Call ``step`` until its result reports ``done``.

    Args:
        step: Zero-argument coroutine function, e.g.
              ``lambda: dump_step(config, session, db)``
        max_steps: Upper bound on calls before giving up
        stats: Optional EngineStats filled in as the loop runs

    Returns:
        (last result, number of steps taken)

    Raises:
        ProgressError: If ``max_steps`` calls did not finish the work
        StepbackError: Whatever the step raises, unchanged
    """
    stats = stats if stats is not None else EngineStats()
    started = time.monotonic()
    result = None

    try:
        for _ in range(max_steps):
            result = await step()
            stats.steps += 1
            if result.done:
                return result, stats.steps
    finally:
        stats.elapsed_seconds = time.monotonic() - started
        stats.finished_at = datetime.now(UTC)

    logger.error("step_limit_exceeded", max_steps=max_steps)
    raise ProgressError(
        f"Work not done after {max_steps} steps",
        details={"max_steps": max_steps},
    )
