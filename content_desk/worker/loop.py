"""
Content Desk worker loop.

Each tick, in order:
1. Recover: schedules and publish events stuck in 'processing' past their lease
2. Publish: execute due scheduled publications
3. Fan out: process pending publish events
4. Digest: build daily and weekly digests whose period elapsed
5. Deliver: send due notifications

Every step opens its own session. A failing step is logged and does not
prevent the later steps from running.
"""
from __future__ import annotations

import logging
import signal
import time
import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.base import get_session_local
from ..notifications.delivery import DeliveryDispatcher
from ..notifications.digest import DigestBuilder
from ..notifications.fanout import FanoutEngine
from ..observability import configure_logging
from ..scheduling.scheduler import Scheduler

logger = logging.getLogger(__name__)


class WorkerLoop:
    """Periodic driver for all background work."""

    def __init__(
        self,
        poll_interval: Optional[int] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        """Initialize worker loop.

        Args:
            poll_interval: Seconds between ticks (default from config)
            session_factory: Callable returning a new Session (default: engine from config)
        """
        self.settings = get_settings()
        self.poll_interval = poll_interval or self.settings.worker_poll_interval
        self.session_factory = session_factory or get_session_local()
        self.running = False
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"

        logger.info(
            f"Worker initialized: id={self.worker_id}, "
            f"poll_interval={self.poll_interval}s"
        )

    def start(self) -> None:
        """Start the worker loop. Runs until stopped."""
        self.running = True
        logger.info(f"Worker {self.worker_id} starting...")

        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            while self.running:
                try:
                    stats = self.run_once()
                    if not self._did_work(stats):
                        time.sleep(self.poll_interval)
                except Exception as e:
                    logger.exception(f"Error in worker loop: {e}")
                    # Sleep on error to avoid tight loop
                    time.sleep(self.poll_interval)
        finally:
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        """Signal the worker to stop after the current tick."""
        logger.info(f"Worker {self.worker_id} stopping...")
        self.running = False

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def run_once(self) -> Dict[str, Any]:
        """Run every step once.

        Returns:
            Per-step summaries; a failed step maps to {"error": message}
        """
        return {
            "recovered": self._step("recover", self._recover),
            "schedules": self._step("schedules", self._process_schedules),
            "fanout": self._step("fanout", self._process_fanout),
            "digests": self._step("digests", self._build_digests),
            "delivery": self._step("delivery", self._deliver),
        }

    def _step(self, name: str, func: Callable[[Session], Any]) -> Any:
        db = self.session_factory()
        try:
            return func(db)
        except Exception as e:
            db.rollback()
            logger.exception(f"Worker step '{name}' failed: {e}")
            return {"error": str(e)}
        finally:
            db.close()

    def _recover(self, db: Session) -> Dict[str, int]:
        return {
            "schedules": Scheduler(
                db, settings=self.settings, worker_id=self.worker_id
            ).recover_stuck(),
            "events": FanoutEngine(db, settings=self.settings).recover_stuck(),
        }

    def _process_schedules(self, db: Session) -> Dict[str, int]:
        summary = Scheduler(db, settings=self.settings, worker_id=self.worker_id).process_due()
        if any(summary.values()):
            logger.info(
                f"Schedules: processed={summary['processed']}, "
                f"failed={summary['failed']}, skipped={summary['skipped']}"
            )
        return summary

    def _process_fanout(self, db: Session) -> Dict[str, int]:
        return FanoutEngine(db, settings=self.settings).process_pending(
            limit=self.settings.sweep_batch_size
        )

    def _build_digests(self, db: Session) -> Dict[str, Dict[str, int]]:
        builder = DigestBuilder(db, settings=self.settings)
        return {
            "daily": builder.build_due("daily"),
            "weekly": builder.build_due("weekly"),
        }

    def _deliver(self, db: Session) -> Dict[str, int]:
        return DeliveryDispatcher(db, settings=self.settings).deliver_pending(
            limit=self.settings.sweep_batch_size
        )

    @staticmethod
    def _did_work(stats: Dict[str, Any]) -> bool:
        schedules = stats.get("schedules") or {}
        fanout = stats.get("fanout") or {}
        return bool(schedules.get("processed") or fanout.get("done"))


def run_worker(poll_interval: Optional[int] = None, once: bool = False) -> Optional[Dict[str, Any]]:
    """Run the worker loop.

    Args:
        poll_interval: Seconds between ticks
        once: Run a single tick and return its summary
    """
    configure_logging()

    worker = WorkerLoop(poll_interval=poll_interval)
    if once:
        return worker.run_once()
    worker.start()
    return None
