"""
Periodic optimization cycle.

The host triggers run_cycle(site_id) (or run_all()) on its own timer,
e.g. every 4 hours. Cycles are single-flight per site: a trigger that
arrives while the previous cycle is still in flight is dropped. A cycle
that has been in flight longer than max_cycle_seconds is treated as
abandoned so the next tick can proceed.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from .db import SessionLocal
from .exceptions import ConcurrentCycle
from .lifecycle import PAUSED, AnomalyReport, LifecycleController
from .models import utcnow

load_dotenv()

MAX_CYCLE_SECONDS = float(os.getenv("AB_MAX_CYCLE_SECONDS", "900"))

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    site_id: str
    skipped: bool = False
    reason: Optional[str] = None
    reconciled: int = 0
    anomaly: Optional[AnomalyReport] = None
    started_experiment_id: Optional[int] = None
    confidence: Optional[Dict[str, Any]] = None


class OptimizerScheduler:
    def __init__(
        self,
        controller: LifecycleController,
        session_factory: Callable[[], Session] = SessionLocal,
        max_cycle_seconds: float = MAX_CYCLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.controller = controller
        self.session_factory = session_factory
        self.max_cycle_seconds = max_cycle_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # site_id -> (token, started_at)
        self._in_flight: Dict[str, Tuple[object, float]] = {}

    def _acquire(self, site_id: str) -> object:
        with self._lock:
            now = self._clock()
            entry = self._in_flight.get(site_id)
            if entry is not None:
                elapsed = now - entry[1]
                if elapsed < self.max_cycle_seconds:
                    raise ConcurrentCycle(site_id)
                logger.warning("abandoning cycle for site %s stuck for %.0fs", site_id, elapsed)
            token = object()
            self._in_flight[site_id] = (token, now)
            return token

    def _release(self, site_id: str, token: object) -> None:
        with self._lock:
            entry = self._in_flight.get(site_id)
            # An abandoned cycle finishing late must not clear its successor
            if entry is not None and entry[0] is token:
                del self._in_flight[site_id]

    def in_flight(self, site_id: str) -> bool:
        with self._lock:
            return site_id in self._in_flight

    def run_cycle(self, site_id: str) -> CycleResult:
        try:
            token = self._acquire(site_id)
        except ConcurrentCycle as signal:
            logger.info("%s, dropping trigger", signal)
            return CycleResult(site_id=site_id, skipped=True, reason="concurrent")

        db = self.session_factory()
        try:
            return self._cycle(db, site_id)
        except Exception:
            db.rollback()
            logger.exception("optimization cycle failed for site %s", site_id)
            return CycleResult(site_id=site_id, skipped=True, reason="error")
        finally:
            db.close()
            self._release(site_id, token)

    def _cycle(self, db: Session, site_id: str) -> CycleResult:
        controller = self.controller
        state = controller.get_or_create_state(db, site_id)
        if not state.enabled:
            return CycleResult(site_id=site_id, skipped=True, reason="disabled")

        result = CycleResult(site_id=site_id)

        # Decisions whose artifact swap failed come first
        result.reconciled = controller.reconcile_publish(db, site_id)
        if controller.has_pending_publish(db, site_id):
            result.reason = "publish_pending"
            return self._finish(db, state, result)

        result.anomaly = controller.detect_anomaly(db, site_id)
        if result.anomaly.status == PAUSED:
            result.reason = "paused"
            return self._finish(db, state, result)

        if controller.current_experiment(db, site_id) is None:
            if controller.weekly_limit_reached(state):
                result.reason = "weekly_limit"
            else:
                experiment = controller.rotate_backlog(db, site_id)
                if experiment is not None:
                    result.started_experiment_id = experiment.id

        # Rotations during conversion requests only make one generator call
        controller.refill_backlog(db, site_id)

        result.confidence = controller.refresh_confidence(db, site_id)
        return self._finish(db, state, result)

    def _finish(self, db: Session, state, result: CycleResult) -> CycleResult:
        state.last_cycle_at = utcnow()
        db.commit()
        logger.info(
            "cycle for site %s done: reason=%s started=%s",
            result.site_id, result.reason, result.started_experiment_id,
        )
        return result

    def run_all(self) -> Dict[str, CycleResult]:
        """Run one cycle for every enabled site. One site failing never stops the others."""
        db = self.session_factory()
        try:
            site_ids = self.controller.enabled_site_ids(db)
        finally:
            db.close()

        logger.info("optimization cycle starting for %d site(s)", len(site_ids))
        return {site_id: self.run_cycle(site_id) for site_id in site_ids}

    def cleanup(self) -> int:
        db = self.session_factory()
        try:
            return self.controller.purge_old_events(db)
        finally:
            db.close()
