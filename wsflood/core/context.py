#!/usr/bin/env python3
"""
wsflood/core/context.py - Explicit run context shared by every component
Run clock, abort signal and scheduling knobs; replaces ambient globals
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from wsflood.metrics.aggregator import MetricsRegistry


@dataclass
class RunOptions:
    """Run-wide scheduling knobs"""
    tick_interval: float = 0.05
    abort_grace: float = 10.0
    evaluation_interval: Optional[float] = None
    seed: Optional[int] = None


class RunContext:
    """Shared run clock and abort signal passed into runners and controllers

    All times are seconds on the event loop's monotonic clock. ``started_at``
    is fixed by ``start()``, and every scenario offset is relative to it.
    """

    def __init__(self, metrics: Optional[MetricsRegistry] = None, options: Optional[RunOptions] = None):
        self.options = options or RunOptions()
        self.metrics = metrics or MetricsRegistry(seed=self.options.seed)
        self.started_at: Optional[float] = None
        self.started_wall: Optional[float] = None
        self.abort_event = asyncio.Event()
        self.abort_reason: Optional[str] = None

    @staticmethod
    def now() -> float:
        return asyncio.get_running_loop().time()

    def start(self) -> None:
        self.started_at = self.now()
        self.started_wall = time.time()

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self.now() - self.started_at

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if not self.abort_event.is_set():
            self.abort_reason = reason
            self.abort_event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless aborted first; returns True when the run was aborted"""
        if self.aborted:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.aborted
        try:
            await asyncio.wait_for(self.abort_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def sleep_until(self, offset: float) -> bool:
        """Sleep until ``offset`` seconds after run start; True when aborted"""
        return await self.sleep(offset - self.elapsed())
