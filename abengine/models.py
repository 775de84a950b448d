# abengine/models.py
import enum
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def week_start_of(moment: datetime) -> date:
    """Sunday that opens the week containing `moment`."""
    day = moment.date()
    return day - timedelta(days=(day.weekday() + 1) % 7)


class ExperimentStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    GRADUATED = "graduated"
    REVERTED = "reverted"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    ExperimentStatus.GRADUATED.value,
    ExperimentStatus.REVERTED.value,
    ExperimentStatus.CANCELLED.value,
}


class ChangeType(str, enum.Enum):
    COPY = "copy"
    IMAGE = "image"
    LAYOUT = "layout"
    COLOR = "color"
    MENU = "menu"
    OTHER = "other"

    @classmethod
    def coerce(cls, value) -> "ChangeType":
        if isinstance(value, cls):
            return value
        # Generators tend to invent their own labels ("cta", "hero", ...)
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.OTHER


class EventType(str, enum.Enum):
    PAGEVIEW = "pageview"
    CLICK = "click"
    ORDER = "order"
    CUSTOM = "custom"


class Experiment(Base):
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(String, nullable=False, index=True)
    hypothesis = Column(Text, nullable=False)
    change_type = Column(String, nullable=False, default=ChangeType.OTHER.value)
    status = Column(String, nullable=False, default=ExperimentStatus.QUEUED.value, index=True)
    priority_score = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    pause_reason = Column(Text, nullable=True)
    winner_variant_id = Column(Integer, nullable=True)
    # Decision made but the publisher call has not succeeded yet
    publish_pending = Column(Boolean, nullable=False, default=False)

    # One-to-many: Experiment → Variants (control first)
    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by=lambda: (Variant.is_control.desc(), Variant.id),
    )

    __table_args__ = (
        # At most one running experiment per site
        Index(
            "uq_experiments_one_running_per_site",
            "site_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    @property
    def control(self):
        return next((v for v in self.variants if v.is_control), None)

    @property
    def treatment(self):
        return next((v for v in self.variants if not v.is_control), None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Variant(Base):
    __tablename__ = "variants"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)

    name = Column(String, nullable=False)  # "control" / "treatment"
    is_control = Column(Boolean, nullable=False, default=False)
    content_ref = Column(String, nullable=True)
    visitors = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)

    experiment = relationship("Experiment", back_populates="variants")

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.visitors if self.visitors else 0.0


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=False)
    variant_id = Column(Integer, ForeignKey("variants.id"), nullable=True, index=True)
    event_type = Column(String, nullable=False)
    event_data = Column(JSON, nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class OptimizerState(Base):
    __tablename__ = "optimizer_state"

    id = Column(Integer, primary_key=True, index=True)
    site_id = Column(String, nullable=False, unique=True, index=True)
    enabled = Column(Boolean, nullable=False, default=False)

    # Artifact currently live as control; replaced on graduation
    control_content_ref = Column(String, nullable=True)
    learnings = Column(JSON, nullable=False, default=list)
    # Last probabilities computed by the scheduler, for status queries
    confidence = Column(JSON, nullable=True)

    total_experiments = Column(Integer, nullable=False, default=0)
    # Weekly rate limit on new experiments; weeks start on Sunday
    experiments_this_week = Column(Integer, nullable=False, default=0)
    week_start = Column(Date, nullable=True)
    last_cycle_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    backlog = relationship(
        "BacklogItem",
        back_populates="state",
        cascade="all, delete-orphan",
        order_by=lambda: (BacklogItem.priority_score.desc(), BacklogItem.id),
    )

    def experiments_in_week(self, now: datetime) -> int:
        """Experiments started in the week containing `now`; a stale week counts as zero."""
        if self.week_start != week_start_of(now):
            return 0
        return self.experiments_this_week or 0

    def count_experiment(self, now: datetime) -> None:
        current = week_start_of(now)
        if self.week_start != current:
            self.week_start = current
            self.experiments_this_week = 0
        self.experiments_this_week = (self.experiments_this_week or 0) + 1
        self.total_experiments = (self.total_experiments or 0) + 1


class BacklogItem(Base):
    __tablename__ = "backlog_items"

    id = Column(Integer, primary_key=True, index=True)
    state_id = Column(Integer, ForeignKey("optimizer_state.id"), nullable=False, index=True)

    hypothesis = Column(Text, nullable=False)
    change_type = Column(String, nullable=False, default=ChangeType.OTHER.value)
    priority_score = Column(Float, nullable=False, default=0.0)
    content_ref = Column(String, nullable=True)  # pre-built treatment, if any
    source = Column(String, nullable=False, default="generator")  # generator / manual
    created_at = Column(DateTime, default=utcnow)

    state = relationship("OptimizerState", back_populates="backlog")
