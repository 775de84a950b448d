"""
Per-request traffic allocation.

Every new visitor is assigned by Thompson Sampling over the latest
counters: one posterior draw per variant, highest draw wins. Returning
visitors keep their sticky variant and are not counted again.
"""
import logging
import os
import random
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv
from sqlalchemy import update
from sqlalchemy.orm import Session

from .exceptions import NoActiveExperiment
from .models import Experiment, ExperimentStatus, Variant
from .sampling import make_rng
from .stats import posterior_sample

load_dotenv()

STICKY_DAYS = int(os.getenv("AB_STICKY_DAYS", "30"))
STICKY_KEY_PREFIX = "abengine_variant_"

logger = logging.getLogger(__name__)


@dataclass
class StickyDirective:
    """Tells the caller to persist key=value for max_age seconds."""
    key: str
    value: str
    max_age: int


@dataclass
class Assignment:
    variant_id: int
    is_control: bool
    experiment_id: int
    content_ref: Optional[str]
    set_sticky: Optional[StickyDirective] = None


def sticky_key(site_id: str) -> str:
    return f"{STICKY_KEY_PREFIX}{site_id}"


def parse_sticky(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_running_experiment(db: Session, site_id: str) -> Optional[Experiment]:
    return (
        db.query(Experiment)
        .filter(
            Experiment.site_id == site_id,
            Experiment.status == ExperimentStatus.RUNNING.value,
        )
        .populate_existing()
        .first()
    )


def load_variants(db: Session, experiment_id: int):
    """Variants with counters re-read from storage, control first."""
    return (
        db.query(Variant)
        .filter(Variant.experiment_id == experiment_id)
        .order_by(Variant.is_control.desc(), Variant.id)
        .populate_existing()
        .all()
    )


def increment_visitors(db: Session, variant_id: int) -> None:
    # Single UPDATE so concurrent allocations never lose an increment
    db.execute(
        update(Variant)
        .where(Variant.id == variant_id)
        .values(visitors=Variant.visitors + 1)
    )


def allocate(
    db: Session,
    site_id: str,
    sticky_variant_id: Any = None,
    rng: Optional[random.Random] = None,
) -> Assignment:
    """
    Pick the variant to render for one request.

    Raises NoActiveExperiment when the site has nothing running; the caller
    then serves control content without tracking.
    """
    experiment = get_running_experiment(db, site_id)
    if experiment is None:
        raise NoActiveExperiment(site_id)

    variants = load_variants(db, experiment.id)

    sticky_id = parse_sticky(sticky_variant_id)
    if sticky_id is not None:
        for variant in variants:
            if variant.id == sticky_id:
                return Assignment(
                    variant_id=variant.id,
                    is_control=variant.is_control,
                    experiment_id=experiment.id,
                    content_ref=variant.content_ref,
                )
        logger.debug("stale sticky variant %s for site %s, reassigning", sticky_id, site_id)

    if not variants:
        raise NoActiveExperiment(site_id)

    rng = rng or make_rng()
    samples = [(posterior_sample(rng, v), v) for v in variants]
    chosen = max(samples, key=lambda pair: pair[0])[1]

    try:
        increment_visitors(db, chosen.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    return Assignment(
        variant_id=chosen.id,
        is_control=chosen.is_control,
        experiment_id=experiment.id,
        content_ref=chosen.content_ref,
        set_sticky=StickyDirective(
            key=sticky_key(site_id),
            value=str(chosen.id),
            max_age=STICKY_DAYS * 24 * 60 * 60,
        ),
    )
