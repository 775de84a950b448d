import os

# Keep the app module's engine off the working directory
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from abengine.collaborators import Hypothesis
from abengine.db import Base
from abengine.exceptions import HypothesisGenerationFailed, PublishFailed
from abengine.lifecycle import LifecycleController
from abengine.models import ChangeType, Experiment, ExperimentStatus, OptimizerState, Variant, utcnow
from abengine.sampling import make_rng


class FakeGenerator:
    """Hands out numbered hypotheses; fails once `fail` is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def next_hypothesis(self, site_id, learnings):
        self.calls += 1
        if self.fail:
            raise HypothesisGenerationFailed("generator offline")
        return Hypothesis(
            text=f"generated idea {self.calls}",
            change_type=ChangeType.COPY,
            priority_score=1.0,
        )


class RecordingPublisher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []
        self.reverted = []

    def publish(self, site_id, content_ref):
        if self.fail:
            raise PublishFailed("deploy target unavailable")
        self.published.append((site_id, content_ref))

    def revert(self, site_id):
        if self.fail:
            raise PublishFailed("deploy target unavailable")
        self.reverted.append(site_id)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def controller(publisher):
    return LifecycleController(publisher=publisher, rng=make_rng(1234))


def make_experiment(
    db,
    site_id="site-1",
    control=(0, 0),
    treatment=(0, 0),
    status=ExperimentStatus.RUNNING,
    hypothesis="Bigger order button",
):
    """Insert an experiment with a control/treatment pair and given (visitors, conversions)."""
    experiment = Experiment(
        site_id=site_id,
        hypothesis=hypothesis,
        change_type=ChangeType.LAYOUT.value,
        status=status.value,
        started_at=utcnow(),
    )
    experiment.variants = [
        Variant(name="control", is_control=True, content_ref=f"{site_id}/index.html",
                visitors=control[0], conversions=control[1]),
        Variant(name="treatment", is_control=False, content_ref=f"{site_id}/variants/t1/index.html",
                visitors=treatment[0], conversions=treatment[1]),
    ]
    db.add(experiment)
    db.commit()
    return experiment


def make_state(db, site_id="site-1", enabled=True):
    state = OptimizerState(site_id=site_id, enabled=enabled, learnings=[],
                           control_content_ref=f"{site_id}/index.html")
    db.add(state)
    db.commit()
    return state
