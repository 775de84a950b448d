import logging
import os
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Request, Response, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .db import SessionLocal, engine
from . import models
from .ai_client import OllamaHypothesisGenerator
from .allocator import allocate, sticky_key, parse_sticky
from .collaborators import Hypothesis
from .exceptions import ExperimentNotFound, InvalidTransition, NoActiveExperiment
from .lifecycle import LifecycleController
from .scheduler import OptimizerScheduler

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="abengine")

# Create DB tables on startup (simple approach, good enough for this project)
models.Base.metadata.create_all(bind=engine)

controller = LifecycleController(generator=OllamaHypothesisGenerator())
scheduler = OptimizerScheduler(controller, session_factory=SessionLocal)


# Dependency that gives a DB session to routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_controller() -> LifecycleController:
    return controller


def get_scheduler() -> OptimizerScheduler:
    return scheduler


class ConversionIn(BaseModel):
    session_id: Optional[str] = None
    variant_id: Optional[int] = None  # falls back to the sticky cookie
    order_id: Optional[str] = None
    total: float = 0.0


class EventIn(BaseModel):
    session_id: str
    event_type: str
    variant_id: Optional[int] = None
    event_data: Optional[Dict[str, Any]] = None


class EventBatch(BaseModel):
    events: List[EventIn]


class ToggleIn(BaseModel):
    enabled: bool
    control_content_ref: Optional[str] = None


class HypothesisIn(BaseModel):
    hypothesis: str
    change_type: str = "other"
    priority_score: float = 0.0
    content_ref: Optional[str] = None


@app.get("/sites/{site_id}/assignment")
def assign_variant(
    site_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    """
    Pick the variant this visitor should see. New visitors get a sticky cookie.
    With no running experiment the visitor gets control and no cookie.
    """
    sticky = request.cookies.get(sticky_key(site_id))
    try:
        assignment = allocate(db, site_id, sticky, rng=lifecycle.rng)
    except NoActiveExperiment:
        return {"variant_id": None, "is_control": True, "experiment_id": None, "content_ref": None}

    if assignment.set_sticky is not None:
        response.set_cookie(
            key=assignment.set_sticky.key,
            value=assignment.set_sticky.value,
            max_age=assignment.set_sticky.max_age,
            path="/",
            samesite="lax",
        )

    return {
        "variant_id": assignment.variant_id,
        "is_control": assignment.is_control,
        "experiment_id": assignment.experiment_id,
        "content_ref": assignment.content_ref,
    }


@app.post("/sites/{site_id}/conversions")
def record_conversion(
    site_id: str,
    payload: ConversionIn,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    variant_id = payload.variant_id
    if variant_id is None:
        variant_id = parse_sticky(request.cookies.get(sticky_key(site_id)))

    try:
        result = lifecycle.record_conversion(
            db,
            site_id,
            variant_id,
            amount=payload.total,
            session_id=payload.session_id,
            order_id=payload.order_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    graduation = result.graduation
    return {
        "success": True,
        "variant_id": result.variant_id,
        "counted": result.counted,
        "graduated": bool(graduation and graduation.graduated),
        "winner": graduation.winner if graduation else None,
        "next_experiment_id": graduation.next_experiment_id if graduation else None,
    }


@app.post("/sites/{site_id}/events")
def record_events(
    site_id: str,
    payload: Union[EventBatch, EventIn],
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    events = payload.events if isinstance(payload, EventBatch) else [payload]
    count = 0
    for event in events:
        try:
            lifecycle.record_event(
                db,
                site_id,
                session_id=event.session_id,
                event_type=event.event_type,
                variant_id=event.variant_id,
                event_data=event.event_data,
            )
        except ValueError:
            # Unknown event types are dropped, the rest of the batch still lands
            continue
        count += 1
    return {"success": True, "count": count}


@app.get("/sites/{site_id}/status")
def get_status(
    site_id: str,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    return lifecycle.get_status(db, site_id)


@app.post("/sites/{site_id}/cycle")
def run_cycle(
    site_id: str,
    cycles: OptimizerScheduler = Depends(get_scheduler),
):
    result = cycles.run_cycle(site_id)
    anomaly = result.anomaly
    return {
        "site_id": result.site_id,
        "skipped": result.skipped,
        "reason": result.reason,
        "reconciled": result.reconciled,
        "paused": bool(anomaly and anomaly.paused),
        "resumed": bool(anomaly and anomaly.resumed),
        "started_experiment_id": result.started_experiment_id,
        "confidence": result.confidence,
    }


@app.post("/sites/{site_id}/toggle")
def toggle(
    site_id: str,
    payload: ToggleIn,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    state = lifecycle.toggle(db, site_id, payload.enabled, payload.control_content_ref)
    return {"site_id": site_id, "enabled": state.enabled}


@app.post("/sites/{site_id}/backlog", status_code=201)
def add_hypothesis(
    site_id: str,
    payload: HypothesisIn,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    item = lifecycle.add_hypothesis(
        db,
        site_id,
        Hypothesis(
            text=payload.hypothesis,
            change_type=models.ChangeType.coerce(payload.change_type),
            priority_score=payload.priority_score,
            content_ref=payload.content_ref,
        ),
    )
    return {"id": item.id, "hypothesis": item.hypothesis, "change_type": item.change_type}


@app.post("/sites/{site_id}/experiments/{experiment_id}/cancel")
def cancel_experiment(
    site_id: str,
    experiment_id: int,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    try:
        experiment = lifecycle.cancel_experiment(db, site_id, experiment_id)
    except ExperimentNotFound:
        raise HTTPException(status_code=404, detail="Experiment not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"id": experiment.id, "status": experiment.status}


@app.post("/sites/{site_id}/experiments/{experiment_id}/revert")
def revert_experiment(
    site_id: str,
    experiment_id: int,
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_controller),
):
    try:
        experiment = lifecycle.revert_experiment(db, site_id, experiment_id, reason="operator")
    except ExperimentNotFound:
        raise HTTPException(status_code=404, detail="Experiment not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"id": experiment.id, "status": experiment.status}
