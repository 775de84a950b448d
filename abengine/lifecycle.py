"""
Experiment lifecycle: conversions, graduation, anomaly pauses, backlog rotation.

LifecycleController is the only component allowed to move an experiment
out of `running`. It keeps no per-site memory between calls; everything
lives in the optimizer_state / experiments / variants rows.
"""
import logging
import os
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pandas as pd
from dotenv import load_dotenv
from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .allocator import get_running_experiment, load_variants
from .collaborators import (
    BacklogContentBuilder,
    Hypothesis,
    HypothesisGenerator,
    LoggingPublisher,
    Publisher,
    VariantBuilder,
)
from .exceptions import (
    AnomalyDetected,
    ExperimentNotFound,
    HypothesisGenerationFailed,
    InsufficientData,
    InvalidTransition,
    PublishFailed,
)
from .models import (
    AnalyticsEvent,
    BacklogItem,
    ChangeType,
    EventType,
    Experiment,
    ExperimentStatus,
    OptimizerState,
    Variant,
    utcnow,
)
from .sampling import make_rng
from .stats import (
    Baseline,
    compute_conversion_stats,
    daily_conversion_rates,
    is_futile,
    probability_best,
    revenue_lift,
    revenue_per_visitor,
    rolling_baseline,
    variants_frame,
    z_score,
)

load_dotenv()

MIN_SAMPLES = int(os.getenv("AB_MIN_SAMPLES", "100"))
GRADUATION_THRESHOLD = float(os.getenv("AB_GRADUATION_THRESHOLD", "0.95"))
GRADUATION_DRAWS = int(os.getenv("AB_GRADUATION_DRAWS", "10000"))
BACKLOG_TARGET = int(os.getenv("AB_BACKLOG_TARGET", "5"))
ANOMALY_SIGMAS = float(os.getenv("AB_ANOMALY_SIGMAS", "3"))
ANOMALY_WINDOW_HOURS = int(os.getenv("AB_ANOMALY_WINDOW_HOURS", "24"))
ANOMALY_MIN_PAGEVIEWS = int(os.getenv("AB_ANOMALY_MIN_PAGEVIEWS", "50"))
BASELINE_DAYS = int(os.getenv("AB_BASELINE_DAYS", "30"))
BASELINE_MIN_DAYS = int(os.getenv("AB_BASELINE_MIN_DAYS", "7"))
EVENT_RETENTION_DAYS = int(os.getenv("AB_EVENT_RETENTION_DAYS", "90"))
MAX_EXPERIMENTS_PER_WEEK = int(os.getenv("AB_MAX_EXPERIMENTS_PER_WEEK", "3"))
# No-effect stop: both arms past FUTILITY_MULTIPLIER x MIN_SAMPLES and p > FUTILITY_P_VALUE
FUTILITY_MULTIPLIER = int(os.getenv("AB_FUTILITY_MULTIPLIER", "4"))
FUTILITY_P_VALUE = float(os.getenv("AB_FUTILITY_P_VALUE", "0.5"))
# Generator calls allowed when a conversion request rolls the backlog forward
ROTATION_REFILL_LIMIT = int(os.getenv("AB_ROTATION_REFILL_LIMIT", "1"))

RUNNING = ExperimentStatus.RUNNING.value
PAUSED = ExperimentStatus.PAUSED.value

logger = logging.getLogger(__name__)


@dataclass
class GraduationResult:
    graduated: bool
    experiment_id: Optional[int] = None
    winner: Optional[str] = None  # "treatment" / "control"
    probability: Optional[float] = None
    control_probability: Optional[float] = None
    treatment_probability: Optional[float] = None
    reason: Optional[str] = None
    publish_failed: bool = False
    next_experiment_id: Optional[int] = None


@dataclass
class ConversionResult:
    event_id: int
    variant_id: Optional[int]
    counted: bool
    graduation: Optional[GraduationResult] = None


@dataclass
class VariantCheck:
    variant_id: int
    pageviews: int
    orders: int
    observed: float
    z: Optional[float]
    anomalous: bool


@dataclass
class AnomalyReport:
    experiment_id: Optional[int]
    status: Optional[str]
    baseline: Optional[Baseline] = None
    checks: List[VariantCheck] = field(default_factory=list)
    anomalous: bool = False
    paused: bool = False
    resumed: bool = False
    reason: Optional[str] = None


class LifecycleController:
    """
    Stateless service over per-site rows.

    Collaborators:
      generator - produces hypotheses for the backlog (optional; without one
                  the backlog only grows through add_hypothesis)
      publisher - swaps the live artifact on graduation / revert
      builder   - turns a backlog item into a treatment content_ref
      rng       - random source for the Monte-Carlo graduation check
    """

    def __init__(
        self,
        generator: Optional[HypothesisGenerator] = None,
        publisher: Optional[Publisher] = None,
        builder: Optional[VariantBuilder] = None,
        rng: Optional[random.Random] = None,
    ):
        self.generator = generator
        self.publisher = publisher or LoggingPublisher()
        self.builder = builder or BacklogContentBuilder()
        self.rng = rng or make_rng()

    # ============ STATE ============

    def get_or_create_state(self, db: Session, site_id: str) -> OptimizerState:
        state = db.query(OptimizerState).filter(OptimizerState.site_id == site_id).first()
        if state is not None:
            return state

        db.add(OptimizerState(site_id=site_id, enabled=False, learnings=[]))
        try:
            db.commit()
        except IntegrityError:
            # Created by a concurrent request
            db.rollback()
        return db.query(OptimizerState).filter(OptimizerState.site_id == site_id).one()

    def toggle(
        self,
        db: Session,
        site_id: str,
        enabled: bool,
        control_content_ref: Optional[str] = None,
    ) -> OptimizerState:
        state = self.get_or_create_state(db, site_id)
        state.enabled = bool(enabled)
        if control_content_ref is not None:
            state.control_content_ref = control_content_ref
        db.commit()
        logger.info("optimizer %s for site %s", "enabled" if enabled else "disabled", site_id)
        return state

    def enabled_site_ids(self, db: Session) -> List[str]:
        rows = db.query(OptimizerState.site_id).filter(OptimizerState.enabled.is_(True)).all()
        return [site_id for (site_id,) in rows]

    def current_experiment(self, db: Session, site_id: str) -> Optional[Experiment]:
        """The running or paused experiment for a site, if any."""
        return (
            db.query(Experiment)
            .filter(
                Experiment.site_id == site_id,
                Experiment.status.in_([RUNNING, PAUSED]),
            )
            .order_by(Experiment.started_at.desc(), Experiment.id.desc())
            .populate_existing()
            .first()
        )

    def _get_experiment(self, db: Session, site_id: str, experiment_id: int) -> Experiment:
        experiment = db.get(Experiment, experiment_id, populate_existing=True)
        if experiment is None or experiment.site_id != site_id:
            raise ExperimentNotFound(experiment_id)
        return experiment

    def _append_learning(self, state: OptimizerState, entry: Dict[str, Any]) -> None:
        # Reassign so the JSON column is flagged dirty
        state.learnings = [*(state.learnings or []), entry]

    # ============ CONVERSIONS ============

    def record_event(
        self,
        db: Session,
        site_id: str,
        session_id: str,
        event_type: str,
        variant_id: Optional[int] = None,
        event_data: Optional[Dict[str, Any]] = None,
        occurred_at=None,
    ) -> AnalyticsEvent:
        """
        Append one analytics fact. Orders recorded here are audit-only;
        counters move through record_conversion.
        """
        event = AnalyticsEvent(
            site_id=site_id,
            session_id=session_id,
            variant_id=variant_id,
            event_type=EventType(event_type).value,
            event_data=event_data,
            occurred_at=occurred_at or utcnow(),
        )
        try:
            db.add(event)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return event

    def _resolve_variant(self, db: Session, site_id: str, variant_id: Optional[int]) -> Optional[Variant]:
        if variant_id is None:
            return None
        variant = (
            db.query(Variant)
            .join(Experiment, Variant.experiment_id == Experiment.id)
            .filter(Variant.id == variant_id, Experiment.site_id == site_id)
            .first()
        )
        if variant is None:
            logger.warning("conversion for unknown variant %s on site %s", variant_id, site_id)
        return variant

    def record_conversion(
        self,
        db: Session,
        site_id: str,
        variant_id: Optional[int],
        amount: float = 0.0,
        session_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> ConversionResult:
        """
        Record an order, bump the variant's counters, then run the real-time
        graduation check. The conversion is committed before graduation is
        evaluated, so a failing check never loses it.
        """
        amount = float(amount or 0.0)
        if amount < 0:
            raise ValueError(f"conversion amount must be non-negative, got {amount}")

        counted = False
        try:
            variant = self._resolve_variant(db, site_id, variant_id)
            event = AnalyticsEvent(
                site_id=site_id,
                session_id=session_id or "anonymous",
                variant_id=variant.id if variant is not None else None,
                event_type=EventType.ORDER.value,
                event_data={"order_id": order_id, "total": amount},
                occurred_at=utcnow(),
            )
            db.add(event)

            if variant is not None:
                # conversions can never overtake visitors
                result = db.execute(
                    update(Variant)
                    .where(Variant.id == variant.id, Variant.conversions < Variant.visitors)
                    .values(
                        conversions=Variant.conversions + 1,
                        revenue=Variant.revenue + amount,
                    )
                )
                counted = result.rowcount == 1
                if not counted:
                    logger.info("variant %s already at conversions == visitors, revenue only", variant.id)
                    db.execute(
                        update(Variant)
                        .where(Variant.id == variant.id)
                        .values(revenue=Variant.revenue + amount)
                    )
            db.commit()
        except Exception:
            db.rollback()
            raise

        graduation = None
        try:
            graduation = self.check_auto_graduate(db, site_id)
        except Exception:
            db.rollback()
            logger.exception("graduation check failed for site %s", site_id)

        return ConversionResult(
            event_id=event.id,
            variant_id=event.variant_id,
            counted=counted,
            graduation=graduation,
        )

    # ============ GRADUATION ============

    def _pair(self, db: Session, experiment: Experiment):
        variants = load_variants(db, experiment.id)
        control = next((v for v in variants if v.is_control), None)
        treatment = next((v for v in variants if not v.is_control), None)
        return control, treatment

    def _require_samples(self, control: Variant, treatment: Variant) -> None:
        if control.visitors < MIN_SAMPLES or treatment.visitors < MIN_SAMPLES:
            raise InsufficientData(MIN_SAMPLES, control.visitors, treatment.visitors)

    def check_auto_graduate(self, db: Session, site_id: str) -> GraduationResult:
        """
        Graduate or revert the running experiment once one side is best
        with probability >= GRADUATION_THRESHOLD. Safe to call repeatedly:
        only the first caller to flip the status acts on the decision.
        """
        experiment = get_running_experiment(db, site_id)
        if experiment is None:
            return GraduationResult(graduated=False, reason="no_active_experiment")

        control, treatment = self._pair(db, experiment)
        if control is None or treatment is None:
            logger.error("experiment %s does not have a control/treatment pair", experiment.id)
            return GraduationResult(graduated=False, experiment_id=experiment.id, reason="invalid_experiment")

        try:
            self._require_samples(control, treatment)
        except InsufficientData as signal:
            logger.debug("experiment %s: %s", experiment.id, signal)
            return GraduationResult(graduated=False, experiment_id=experiment.id, reason="insufficient_data")

        p_control, p_treatment = probability_best(
            self.rng, [control, treatment], draws=GRADUATION_DRAWS
        )

        result_label = None
        if p_treatment >= GRADUATION_THRESHOLD:
            winner, status, probability = treatment, ExperimentStatus.GRADUATED, p_treatment
        elif p_control >= GRADUATION_THRESHOLD:
            winner, status, probability = control, ExperimentStatus.REVERTED, p_control
        elif is_futile(control, treatment, MIN_SAMPLES * FUTILITY_MULTIPLIER, FUTILITY_P_VALUE):
            # Long-running with no detectable effect: keep control, free the slot
            winner, status, probability = control, ExperimentStatus.REVERTED, p_control
            result_label = "no_effect"
        else:
            return GraduationResult(
                graduated=False,
                experiment_id=experiment.id,
                control_probability=p_control,
                treatment_probability=p_treatment,
                reason="undecided",
            )

        return self._conclude(
            db, site_id, experiment, control, treatment, winner, status,
            probability, p_control, p_treatment, result_label=result_label,
        )

    def _conclude(
        self,
        db: Session,
        site_id: str,
        experiment: Experiment,
        control: Variant,
        treatment: Variant,
        winner: Variant,
        status: ExperimentStatus,
        probability: float,
        p_control: float,
        p_treatment: float,
        result_label: Optional[str] = None,
    ) -> GraduationResult:
        winner_name = "control" if winner.is_control else "treatment"
        result_label = result_label or status.value
        try:
            flipped = db.execute(
                update(Experiment)
                .where(Experiment.id == experiment.id, Experiment.status == RUNNING)
                .values(
                    status=status.value,
                    ended_at=utcnow(),
                    winner_variant_id=winner.id,
                    publish_pending=True,
                )
            )
            if flipped.rowcount != 1:
                db.rollback()
                return GraduationResult(graduated=False, experiment_id=experiment.id, reason="already_concluded")

            state = self.get_or_create_state(db, site_id)
            self._append_learning(state, {
                "experiment_id": experiment.id,
                "hypothesis": experiment.hypothesis,
                "change_type": experiment.change_type,
                "result": result_label,
                "winner": winner_name,
                "probability": probability,
                "control_rate": control.conversion_rate,
                "treatment_rate": treatment.conversion_rate,
                "control_visitors": control.visitors,
                "treatment_visitors": treatment.visitors,
                "control_revenue_per_visitor": revenue_per_visitor(control),
                "treatment_revenue_per_visitor": revenue_per_visitor(treatment),
                "revenue_lift": revenue_lift(control, treatment),
                "recorded_at": utcnow().isoformat(),
            })
            if status is ExperimentStatus.GRADUATED:
                state.control_content_ref = treatment.content_ref
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "experiment %s %s (%s): %s best with probability %.3f",
            experiment.id, status.value, result_label, winner_name, probability,
        )

        result = GraduationResult(
            graduated=True,
            experiment_id=experiment.id,
            winner=winner_name,
            probability=probability,
            control_probability=p_control,
            treatment_probability=p_treatment,
            reason=result_label,
        )

        db.refresh(experiment)
        if not self._publish(db, experiment):
            # Keep the next experiment off until the swap has gone through
            result.publish_failed = True
            return result

        # Marathon mode: no idle gap between experiments
        if state.enabled:
            try:
                nxt = self.rotate_backlog(db, site_id, refill_limit=ROTATION_REFILL_LIMIT)
            except Exception:
                db.rollback()
                logger.exception("could not start next experiment for site %s", site_id)
            else:
                result.next_experiment_id = nxt.id if nxt is not None else None
        return result

    def _publish(self, db: Session, experiment: Experiment) -> bool:
        """Push a concluded experiment's decision to the publisher."""
        try:
            if experiment.status == ExperimentStatus.GRADUATED.value:
                winner = db.get(Variant, experiment.winner_variant_id)
                self.publisher.publish(experiment.site_id, winner.content_ref)
            else:
                self.publisher.revert(experiment.site_id)
        except PublishFailed as err:
            logger.error("publish failed for experiment %s: %s", experiment.id, err)
            return False
        except Exception:
            logger.exception("publisher raised for experiment %s", experiment.id)
            return False

        experiment.publish_pending = False
        db.commit()
        return True

    def reconcile_publish(self, db: Session, site_id: str) -> int:
        """Retry publisher calls for decisions that have not been applied. Returns the count applied."""
        pending = (
            db.query(Experiment)
            .filter(Experiment.site_id == site_id, Experiment.publish_pending.is_(True))
            .order_by(Experiment.ended_at, Experiment.id)
            .all()
        )
        applied = 0
        for experiment in pending:
            if not experiment.is_terminal:
                continue
            if not self._publish(db, experiment):
                break
            applied += 1
        if applied:
            logger.info("reconciled %d pending publish(es) for site %s", applied, site_id)
        return applied

    def has_pending_publish(self, db: Session, site_id: str) -> bool:
        return db.query(
            db.query(Experiment)
            .filter(Experiment.site_id == site_id, Experiment.publish_pending.is_(True))
            .exists()
        ).scalar()

    # ============ ANOMALY DETECTION ============

    def site_baseline(self, db: Session, site_id: str, now=None) -> Optional[Baseline]:
        """
        Mean/stddev of daily site conversion rates over the last BASELINE_DAYS,
        excluding the live anomaly window.
        """
        now = now or utcnow()
        window_start = now - timedelta(hours=ANOMALY_WINDOW_HOURS)
        rows = (
            db.query(AnalyticsEvent.occurred_at, AnalyticsEvent.event_type)
            .filter(
                AnalyticsEvent.site_id == site_id,
                AnalyticsEvent.event_type.in_([EventType.PAGEVIEW.value, EventType.ORDER.value]),
                AnalyticsEvent.occurred_at >= now - timedelta(days=BASELINE_DAYS),
                AnalyticsEvent.occurred_at < window_start,
            )
            .all()
        )
        events = pd.DataFrame([tuple(r) for r in rows], columns=["occurred_at", "event_type"])
        return rolling_baseline(daily_conversion_rates(events), min_days=BASELINE_MIN_DAYS)

    def _window_counts(self, db: Session, variant_id: int, start, end):
        rows = (
            db.query(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
            .filter(
                AnalyticsEvent.variant_id == variant_id,
                AnalyticsEvent.occurred_at >= start,
                AnalyticsEvent.occurred_at <= end,
            )
            .group_by(AnalyticsEvent.event_type)
            .all()
        )
        counts = dict(rows)
        return counts.get(EventType.PAGEVIEW.value, 0), counts.get(EventType.ORDER.value, 0)

    def _check_band(self, variant_id: int, observed: float, baseline: Baseline) -> Optional[float]:
        z = z_score(observed, baseline)
        if z is not None and abs(z) > ANOMALY_SIGMAS:
            raise AnomalyDetected(variant_id, observed, z)
        return z

    def detect_anomaly(
        self,
        db: Session,
        site_id: str,
        baseline: Optional[Baseline] = None,
        now=None,
    ) -> AnomalyReport:
        """
        Compare each variant's conversion rate over the last
        ANOMALY_WINDOW_HOURS with the site's 30-day baseline.

        Running + any variant beyond ANOMALY_SIGMAS -> paused.
        Paused + no variant beyond ANOMALY_SIGMAS  -> running again.
        Variants with fewer than ANOMALY_MIN_PAGEVIEWS in the window are skipped.
        """
        now = now or utcnow()
        experiment = self.current_experiment(db, site_id)
        if experiment is None:
            return AnomalyReport(experiment_id=None, status=None, reason="no_experiment")

        report = AnomalyReport(experiment_id=experiment.id, status=experiment.status)
        report.baseline = baseline or self.site_baseline(db, site_id, now=now)
        if report.baseline is None:
            report.reason = "no_baseline"
            return report

        window_start = now - timedelta(hours=ANOMALY_WINDOW_HOURS)
        first_signal: Optional[AnomalyDetected] = None
        for variant in load_variants(db, experiment.id):
            pageviews, orders = self._window_counts(db, variant.id, window_start, now)
            if pageviews < ANOMALY_MIN_PAGEVIEWS:
                continue
            observed = orders / pageviews
            try:
                z = self._check_band(variant.id, observed, report.baseline)
                anomalous = False
            except AnomalyDetected as signal:
                z = signal.z
                anomalous = True
                first_signal = first_signal or signal
            report.checks.append(VariantCheck(variant.id, pageviews, orders, observed, z, anomalous))

        report.anomalous = first_signal is not None
        if report.anomalous and experiment.status == RUNNING:
            report.paused = self.pause_experiment(db, site_id, experiment.id, str(first_signal))
            report.reason = str(first_signal)
        elif not report.anomalous and experiment.status == PAUSED:
            report.resumed = self.resume_experiment(db, site_id, experiment.id)

        if report.paused:
            report.status = PAUSED
        elif report.resumed:
            report.status = RUNNING
        return report

    def pause_experiment(self, db: Session, site_id: str, experiment_id: int, reason: str) -> bool:
        self._get_experiment(db, site_id, experiment_id)
        try:
            flipped = db.execute(
                update(Experiment)
                .where(Experiment.id == experiment_id, Experiment.status == RUNNING)
                .values(status=PAUSED, pause_reason=reason)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        if flipped.rowcount == 1:
            logger.warning("experiment %s paused: %s", experiment_id, reason)
            return True
        return False

    def resume_experiment(self, db: Session, site_id: str, experiment_id: int) -> bool:
        self._get_experiment(db, site_id, experiment_id)
        try:
            flipped = db.execute(
                update(Experiment)
                .where(Experiment.id == experiment_id, Experiment.status == PAUSED)
                .values(status=RUNNING, pause_reason=None)
            )
            db.commit()
        except IntegrityError:
            # Another experiment is already running for the site
            db.rollback()
            logger.warning("experiment %s stays paused: site %s has a running experiment", experiment_id, site_id)
            return False
        except Exception:
            db.rollback()
            raise
        if flipped.rowcount == 1:
            logger.info("experiment %s resumed", experiment_id)
            return True
        return False

    # ============ OPERATOR ACTIONS ============

    def _transition(self, db: Session, experiment: Experiment, allowed, target: ExperimentStatus, **values) -> None:
        """
        Conditional status change. Raises InvalidTransition when another writer
        moved the experiment first; the caller commits on success.
        """
        flipped = db.execute(
            update(Experiment)
            .where(Experiment.id == experiment.id, Experiment.status.in_(list(allowed)))
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            db.rollback()
            current = db.get(Experiment, experiment.id, populate_existing=True)
            raise InvalidTransition(experiment.id, current.status if current else None, target.value)

    def revert_experiment(self, db: Session, site_id: str, experiment_id: int, reason: str = "manual") -> Experiment:
        """End a running or paused experiment in favour of control."""
        experiment = self._get_experiment(db, site_id, experiment_id)
        if experiment.status not in (RUNNING, PAUSED):
            raise InvalidTransition(experiment_id, experiment.status, ExperimentStatus.REVERTED.value)

        control, treatment = self._pair(db, experiment)
        try:
            self._transition(
                db, experiment, (RUNNING, PAUSED), ExperimentStatus.REVERTED,
                ended_at=utcnow(),
                winner_variant_id=control.id if control is not None else None,
                publish_pending=True,
            )
            state = self.get_or_create_state(db, site_id)
            self._append_learning(state, {
                "experiment_id": experiment.id,
                "hypothesis": experiment.hypothesis,
                "change_type": experiment.change_type,
                "result": ExperimentStatus.REVERTED.value,
                "winner": "control",
                "probability": None,
                "reason": reason,
                "control_rate": control.conversion_rate if control is not None else None,
                "treatment_rate": treatment.conversion_rate if treatment is not None else None,
                "recorded_at": utcnow().isoformat(),
            })
            db.commit()
        except InvalidTransition:
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(experiment)
        logger.info("experiment %s reverted (%s)", experiment_id, reason)
        self._publish(db, experiment)
        return experiment

    def cancel_experiment(self, db: Session, site_id: str, experiment_id: int) -> Experiment:
        experiment = self._get_experiment(db, site_id, experiment_id)
        if experiment.is_terminal:
            raise InvalidTransition(experiment_id, experiment.status, ExperimentStatus.CANCELLED.value)

        was_live = experiment.status in (RUNNING, PAUSED)
        try:
            self._transition(
                db, experiment, (experiment.status,), ExperimentStatus.CANCELLED,
                ended_at=utcnow(),
                publish_pending=was_live,
            )
            db.commit()
        except InvalidTransition:
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(experiment)
        logger.info("experiment %s cancelled", experiment_id)
        if was_live:
            self._publish(db, experiment)
        return experiment

    # ============ BACKLOG ============

    def backlog_size(self, db: Session, state: OptimizerState) -> int:
        return (
            db.query(func.count(BacklogItem.id))
            .filter(BacklogItem.state_id == state.id)
            .scalar()
        )

    def add_hypothesis(self, db: Session, site_id: str, hypothesis: Hypothesis, source: str = "manual") -> BacklogItem:
        state = self.get_or_create_state(db, site_id)
        item = BacklogItem(
            hypothesis=hypothesis.text,
            change_type=ChangeType.coerce(hypothesis.change_type).value,
            priority_score=float(hypothesis.priority_score or 0.0),
            content_ref=hypothesis.content_ref,
            source=source,
        )
        state.backlog.append(item)
        db.commit()
        return item

    def refill_backlog(self, db: Session, site_id: str, limit: Optional[int] = None) -> int:
        """
        Ask the generator for hypotheses until the backlog reaches
        BACKLOG_TARGET or `limit` generator calls have been made.
        Stops quietly at the first failure.
        """
        if self.generator is None:
            return 0

        state = self.get_or_create_state(db, site_id)
        added = 0
        calls = 0
        while self.backlog_size(db, state) < BACKLOG_TARGET:
            if limit is not None and calls >= limit:
                break
            calls += 1
            try:
                hypothesis = self.generator.next_hypothesis(site_id, list(state.learnings or []))
            except HypothesisGenerationFailed as err:
                logger.warning("hypothesis generation failed for site %s: %s", site_id, err)
                break
            except Exception:
                logger.exception("hypothesis generator raised for site %s", site_id)
                break
            self.add_hypothesis(db, site_id, hypothesis, source="generator")
            added += 1

        if added:
            logger.info("added %d hypothes%s to backlog for site %s", added, "is" if added == 1 else "es", site_id)
        return added

    def _next_backlog_item(self, db: Session, state: OptimizerState) -> Optional[BacklogItem]:
        return (
            db.query(BacklogItem)
            .filter(BacklogItem.state_id == state.id)
            .order_by(BacklogItem.priority_score.desc(), BacklogItem.id)
            .first()
        )

    def weekly_limit_reached(self, state: OptimizerState, now=None) -> bool:
        return state.experiments_in_week(now or utcnow()) >= MAX_EXPERIMENTS_PER_WEEK

    def rotate_backlog(
        self,
        db: Session,
        site_id: str,
        now=None,
        refill_limit: Optional[int] = None,
    ) -> Optional[Experiment]:
        """
        Start the highest-priority backlog hypothesis as a new experiment.

        Control carries over the site's live artifact; the treatment comes
        from the builder. Returns None when something is already running or
        paused, when the site has used its MAX_EXPERIMENTS_PER_WEEK, or when
        there is nothing to start. refill_limit caps the generator calls
        made here; the scheduler tops the backlog up on later cycles.
        """
        now = now or utcnow()
        state = self.get_or_create_state(db, site_id)
        if self.current_experiment(db, site_id) is not None:
            logger.info("site %s already has an active experiment, not rotating", site_id)
            return None
        if self.weekly_limit_reached(state, now):
            logger.info("site %s reached %d experiments this week, not rotating", site_id, MAX_EXPERIMENTS_PER_WEEK)
            return None

        calls_left = refill_limit
        item = self._next_backlog_item(db, state)
        if item is None:
            self.refill_backlog(db, site_id, limit=calls_left)
            if calls_left is not None:
                calls_left = 0
            item = self._next_backlog_item(db, state)
        if item is None:
            logger.info("backlog empty for site %s", site_id)
            return None

        try:
            treatment_ref = self.builder.build_treatment(site_id, item)
        except Exception:
            logger.exception("could not build treatment for backlog item %s, dropping it", item.id)
            state.backlog.remove(item)
            db.commit()
            return None

        experiment = Experiment(
            site_id=site_id,
            hypothesis=item.hypothesis,
            change_type=item.change_type,
            priority_score=item.priority_score,
            status=ExperimentStatus.QUEUED.value,
        )
        experiment.variants = [
            Variant(name="control", is_control=True, content_ref=state.control_content_ref),
            Variant(name="treatment", is_control=False, content_ref=treatment_ref),
        ]
        try:
            db.add(experiment)
            db.flush()
            experiment.status = RUNNING
            experiment.started_at = now
            state.backlog.remove(item)
            state.count_experiment(now)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("site %s started an experiment concurrently, not rotating", site_id)
            return None
        except Exception:
            db.rollback()
            raise

        logger.info("started experiment %s for site %s: %s", experiment.id, site_id, experiment.hypothesis)
        if calls_left != 0:
            self.refill_backlog(db, site_id, limit=calls_left)
        return experiment

    # ============ STATUS ============

    def refresh_confidence(self, db: Session, site_id: str) -> Optional[Dict[str, Any]]:
        """
        Recompute P(best) for the running experiment and cache it on the
        site's state. Never graduates.
        """
        state = self.get_or_create_state(db, site_id)
        experiment = get_running_experiment(db, site_id)
        if experiment is None:
            return None
        control, treatment = self._pair(db, experiment)
        if control is None or treatment is None:
            return None

        p_control, p_treatment = probability_best(self.rng, [control, treatment], draws=GRADUATION_DRAWS)
        state.confidence = {
            "experiment_id": experiment.id,
            "control": p_control,
            "treatment": p_treatment,
            "computed_at": utcnow().isoformat(),
        }
        db.commit()
        return state.confidence

    def get_status(self, db: Session, site_id: str, now=None) -> Dict[str, Any]:
        """Read-only snapshot; an unknown site reads as disabled and empty."""
        state = db.query(OptimizerState).filter(OptimizerState.site_id == site_id).first()
        experiment = self.current_experiment(db, site_id)

        experiment_out = None
        probabilities = None
        if experiment is not None:
            variants = load_variants(db, experiment.id)
            experiment_out = {
                "id": experiment.id,
                "hypothesis": experiment.hypothesis,
                "change_type": experiment.change_type,
                "status": experiment.status,
                "started_at": experiment.started_at.isoformat() if experiment.started_at else None,
                "pause_reason": experiment.pause_reason,
                "variants": compute_conversion_stats(variants_frame(variants)),
            }
            if state is not None and state.confidence and state.confidence.get("experiment_id") == experiment.id:
                probabilities = state.confidence

        backlog = []
        if state is not None:
            backlog = (
                db.query(BacklogItem)
                .filter(BacklogItem.state_id == state.id)
                .order_by(BacklogItem.priority_score.desc(), BacklogItem.id)
                .all()
            )
        return {
            "site_id": site_id,
            "enabled": bool(state is not None and state.enabled),
            "experiment": experiment_out,
            "probabilities": probabilities,
            "backlog_size": len(backlog),
            "backlog": [
                {"hypothesis": b.hypothesis, "change_type": b.change_type, "priority_score": b.priority_score}
                for b in backlog
            ],
            "learnings": list(state.learnings or []) if state is not None else [],
            "total_experiments": (state.total_experiments or 0) if state is not None else 0,
            "experiments_this_week": state.experiments_in_week(now or utcnow()) if state is not None else 0,
            "max_experiments_per_week": MAX_EXPERIMENTS_PER_WEEK,
            "publish_pending": self.has_pending_publish(db, site_id),
            "last_cycle_at": state.last_cycle_at.isoformat() if state is not None and state.last_cycle_at else None,
        }

    # ============ MAINTENANCE ============

    def purge_old_events(self, db: Session, older_than_days: int = EVENT_RETENTION_DAYS, now=None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        try:
            result = db.execute(
                delete(AnalyticsEvent)
                .where(AnalyticsEvent.occurred_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("purged %d analytics events older than %d days", result.rowcount, older_than_days)
        return result.rowcount
