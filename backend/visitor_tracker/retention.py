"""Retention sweep and the background task that schedules it."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import store
from .config import load_settings
from .models import current_timestamp

logger = logging.getLogger(__name__)


def retention_cutoff(retention_days: int, now: datetime) -> datetime:
    return now - timedelta(days=retention_days)


def sweep(db: Session, retention_days: int, now: Optional[datetime] = None) -> int:
    """Delete events older than ``retention_days`` and return how many went.

    An event stamped exactly at the cutoff is kept.
    """

    if retention_days < 1:
        raise ValueError("retention_days must be at least 1")
    cutoff = retention_cutoff(retention_days, now or current_timestamp())
    deleted = store.delete_older_than(db, cutoff)
    logger.info("Retention sweep removed %d events older than %s", deleted, cutoff)
    return deleted


class RetentionWorker:
    """Runs :func:`sweep` on a fixed interval inside the event loop."""

    def __init__(self, session_factory, interval_seconds: int) -> None:
        self._session_factory = session_factory
        self._interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None

    def sweep_once(self) -> int:
        settings = load_settings()
        with self._session_factory() as db:
            return sweep(db, settings.retention_days)

    async def run_cycle(self) -> None:
        try:
            await asyncio.to_thread(self.sweep_once)
        except Exception:  # pragma: no cover - log unexpected failures
            logger.exception("Failed to execute retention sweep")

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_seconds)
                await self.run_cycle()
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            pass

    async def start(self) -> None:
        if self._task is not None:
            return
        # Purge old data immediately, then once per interval.
        await self.run_cycle()
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self._task = None
