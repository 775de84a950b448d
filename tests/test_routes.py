import pytest
from fastapi.testclient import TestClient

from abengine.main import app, get_controller, get_db, get_scheduler
from abengine.models import OptimizerState, Variant
from abengine.scheduler import OptimizerScheduler

from conftest import make_experiment


@pytest.fixture
def client(session_factory, controller):
    scheduler = OptimizerScheduler(controller, session_factory=session_factory)

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_controller] = lambda: controller
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _visitors(db, experiment):
    db.expire_all()
    return sum(v.visitors for v in db.query(Variant).filter(Variant.experiment_id == experiment.id))


def test_assignment_without_experiment_serves_control(client):
    response = client.get("/sites/site-1/assignment")

    assert response.status_code == 200
    body = response.json()
    assert body["variant_id"] is None
    assert body["is_control"] is True
    assert "abengine_variant_site-1" not in response.cookies


def test_assignment_sets_cookie_and_sticks(client, db):
    experiment = make_experiment(db)

    first = client.get("/sites/site-1/assignment")
    assert first.status_code == 200
    assert first.cookies.get("abengine_variant_site-1") == str(first.json()["variant_id"])

    # The client sends the cookie back; no new visitor is counted
    for _ in range(5):
        again = client.get("/sites/site-1/assignment")
        assert again.json()["variant_id"] == first.json()["variant_id"]

    assert _visitors(db, experiment) == 1


def test_conversion_uses_cookie_variant(client, db):
    make_experiment(db)
    variant_id = client.get("/sites/site-1/assignment").json()["variant_id"]

    response = client.post("/sites/site-1/conversions", json={"session_id": "s-9", "order_id": "o-1", "total": 18.5})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["variant_id"] == variant_id
    assert body["counted"] is True
    assert body["graduated"] is False

    db.expire_all()
    variant = db.get(Variant, variant_id)
    assert variant.conversions == 1
    assert variant.revenue == pytest.approx(18.5)


def test_negative_conversion_is_rejected(client):
    response = client.post("/sites/site-1/conversions", json={"total": -1})

    assert response.status_code == 400


def test_event_batch_drops_unknown_types(client):
    payload = {
        "events": [
            {"session_id": "s-1", "event_type": "pageview"},
            {"session_id": "s-1", "event_type": "click", "event_data": {"target": "menu"}},
            {"session_id": "s-1", "event_type": "teleport"},
        ]
    }

    response = client.post("/sites/site-1/events", json=payload)

    assert response.status_code == 200
    assert response.json() == {"success": True, "count": 2}


def test_toggle_backlog_cycle_status(client):
    toggled = client.post("/sites/site-1/toggle", json={"enabled": True, "control_content_ref": "site-1/index.html"})
    assert toggled.json() == {"site_id": "site-1", "enabled": True}

    added = client.post(
        "/sites/site-1/backlog",
        json={"hypothesis": "Lead with the lunch special", "change_type": "copy", "priority_score": 7},
    )
    assert added.status_code == 201
    assert added.json()["change_type"] == "copy"

    cycle = client.post("/sites/site-1/cycle")
    assert cycle.status_code == 200
    assert cycle.json()["skipped"] is False
    assert cycle.json()["started_experiment_id"] is not None

    status = client.get("/sites/site-1/status").json()
    assert status["enabled"] is True
    assert status["experiment"]["hypothesis"] == "Lead with the lunch special"
    assert status["experiment"]["status"] == "running"
    assert status["backlog_size"] == 0
    assert status["total_experiments"] == 1
    assert status["last_cycle_at"] is not None


def test_cycle_on_disabled_site(client):
    response = client.post("/sites/site-1/cycle")

    assert response.json()["skipped"] is True
    assert response.json()["reason"] == "disabled"


def test_cancel_then_cancel_again(client, db):
    experiment = make_experiment(db)

    first = client.post(f"/sites/site-1/experiments/{experiment.id}/cancel")
    second = client.post(f"/sites/site-1/experiments/{experiment.id}/cancel")

    assert first.json() == {"id": experiment.id, "status": "cancelled"}
    assert second.status_code == 409


def test_revert_unknown_experiment(client):
    response = client.post("/sites/site-1/experiments/999/revert")

    assert response.status_code == 404


def test_status_for_unknown_site_is_read_only(client, db):
    response = client.get("/sites/nobody-here/status")

    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert response.json()["experiment"] is None
    assert db.query(OptimizerState).count() == 0
