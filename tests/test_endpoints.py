"""
Integration tests for the /behavior API using the SQLite test database and
the reference heuristic detector.

Every test uses its own user id: the database is shared for the session.
"""
from datetime import timedelta

from nudge.models.experiment_event import ExperimentEventModel
from nudge.models.state_transition import StateTransitionModel

from conftest import NOW


def _tx(tx_id, when, amount=25.0, category="food_delivery"):
    return {"id": tx_id, "amount": amount, "category": category, "occurred_at": when.isoformat()}


def _stress_window():
    """Six late-night deliveries plus four mid-day grocery runs."""
    late = [_tx(f"s{i}", (NOW - timedelta(days=i + 1)).replace(hour=22)) for i in range(6)]
    groceries = [
        _tx(f"g{i}", (NOW - timedelta(days=i + 1)).replace(hour=11), amount=60.0, category="groceries")
        for i in range(4)
    ]
    return late + groceries


def _evaluate(client, user_id, transactions=None, as_of=NOW):
    r = client.post(
        f"/behavior/{user_id}/evaluate",
        json={"transactions": transactions or _stress_window(), "as_of": as_of.isoformat()},
    )
    assert r.status_code == 200
    return r.json()


def _activate(client, user_id):
    """Smoothing needs a few passes before confidence crosses the threshold."""
    body = None
    for _ in range(4):
        body = _evaluate(client, user_id)
    assert body["profile"]["user_state"] == "ACTIVE"
    return body


def _late_delivery(client, user_id, as_of=NOW, tx_id="new"):
    r = client.post(
        f"/behavior/{user_id}/transactions",
        json={
            "transaction": _tx(tx_id, (NOW - timedelta(days=1)).replace(hour=23)),
            "recent_transactions": _stress_window(),
            "as_of": as_of.isoformat(),
        },
    )
    assert r.status_code == 200
    return r.json()


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"


class TestProfile:
    def test_new_user_gets_defaults(self, client):
        r = client.get("/behavior/api-new/profile")
        assert r.status_code == 200
        body = r.json()
        assert body["user_state"] == "OBSERVING"
        assert body["active_behavior"] is None
        assert set(body["confidence"].values()) == {0.0}
        assert body["intervention_enabled"] is True

    def test_context(self, client):
        _activate(client, "api-context")
        r = client.get("/behavior/api-context/context")
        assert r.status_code == 200
        body = r.json()
        assert body["active_behavior"] == "stress_spending"
        assert body["pending_wins"] == 0
        assert "stress spending" in body["summary"]


class TestEvaluate:
    def test_too_few_transactions(self, client):
        body = _evaluate(client, "api-few", transactions=_stress_window()[:5])
        assert body["ran"] is False
        assert body["detections"] == {}
        assert body["profile"]["evaluation_count"] == 0

    def test_repeated_evidence_activates(self, client):
        first = _evaluate(client, "api-eval")
        assert first["ran"] is True
        assert first["detections"]["stress_spending"]["detected"] is True
        assert first["profile"]["user_state"] == "OBSERVING"
        body = _activate(client, "api-eval")
        assert body["profile"]["active_behavior"] == "stress_spending"
        assert body["profile"]["confidence"]["stress_spending"] <= 0.95

    def test_transition_is_audited(self, client, db):
        _activate(client, "api-audit")
        rows = db.query(StateTransitionModel).filter_by(user_id="api-audit").all()
        assert [(r.from_state, r.to_state) for r in rows] == [("OBSERVING", "ACTIVE")]


class TestInterventionFlow:
    def test_deliver_respond_and_back_off(self, client, db):
        user = "api-flow"
        _activate(client, user)

        body = _late_delivery(client, user)
        assert body["decision"]["should_intervene"] is True
        assert body["moment_type"] == "CATEGORY_BINGE"
        intervention = body["intervention"]
        assert intervention["message_key"] == "ss_im_04"
        assert body["profile"]["user_state"] == "COOLDOWN"

        r = client.get(f"/behavior/{user}/interventions")
        assert r.json()["total"] == 1

        r = client.post(
            f"/behavior/{user}/interventions/{intervention['id']}/response",
            json={"response": "ignored", "as_of": (NOW + timedelta(hours=1)).isoformat()},
        )
        assert r.status_code == 200
        assert r.json()["action"] == "extend_cooldown"
        assert r.json()["profile"]["ignored_interventions"] == 1

        r = client.post(
            f"/behavior/{user}/interventions/{intervention['id']}/response",
            json={"response": "engaged"},
        )
        assert r.status_code == 409
        assert r.json()["code"] == "RESPONSE_ALREADY_RECORDED"

        blocked = _late_delivery(client, user, as_of=NOW + timedelta(hours=2), tx_id="new2")
        assert blocked["decision"]["should_intervene"] is False
        assert blocked["decision"]["blocked_by"] == "cooldown"
        assert blocked["intervention"] is None

        listed = client.get(f"/behavior/{user}/interventions").json()["items"]
        assert listed[0]["user_response"] == "ignored"

        events = db.query(ExperimentEventModel).filter_by(user_id=user).all()
        assert {e.event_name for e in events} == {"intervention_shown", "intervention_ignored"}

    def test_observing_user_is_blocked_by_state(self, client):
        body = _late_delivery(client, "api-observing")
        assert body["decision"]["blocked_by"] == "state"

    def test_disabled_user(self, client):
        r = client.put("/behavior/api-off/settings", json={"intervention_enabled": False})
        assert r.status_code == 200
        assert r.json()["intervention_enabled"] is False
        _activate(client, "api-off")
        body = _late_delivery(client, "api-off")
        assert body["decision"]["blocked_by"] == "entitlement"


class TestWins:
    def test_no_win_for_new_user(self, client):
        r = client.post(
            "/behavior/api-nowin/wins/check",
            json={"transactions": _stress_window(), "as_of": NOW.isoformat()},
        )
        assert r.status_code == 200
        assert r.json()["win"] is None
        assert r.json()["streak_break_reason"] is None
        assert r.json()["streak_break_message"] is None

    def test_win_then_celebrate_once(self, client):
        user = "api-win"
        _activate(client, user)
        _late_delivery(client, user)

        # The following weeks: deliveries stop, groceries continue
        later = NOW + timedelta(days=8)
        quiet = [
            _tx(f"q{i}", (later - timedelta(days=i + 1)).replace(hour=11), amount=60.0, category="groceries")
            for i in range(8)
        ]
        r = client.post(
            f"/behavior/{user}/wins/check",
            json={"transactions": _stress_window() + quiet, "as_of": later.isoformat()},
        )
        assert r.status_code == 200
        win = r.json()["win"]
        assert win["win_type"] == "pattern_break"
        assert win["celebrated"] is False

        pending = client.get(f"/behavior/{user}/wins").json()
        assert [w["id"] for w in pending["items"]] == [win["id"]]

        first = client.post(f"/behavior/{user}/wins/{win['id']}/celebrate")
        second = client.post(f"/behavior/{user}/wins/{win['id']}/celebrate")
        assert first.json()["current_streak"] == 1
        assert second.json()["current_streak"] == 1
        assert second.json()["total_wins"] == 1
        assert client.get(f"/behavior/{user}/wins").json()["total"] == 0


class TestResetAndSettings:
    def test_reset(self, client):
        _activate(client, "api-reset")
        r = client.post("/behavior/api-reset/reset")
        assert r.status_code == 200
        assert r.json()["user_state"] == "OBSERVING"
        assert r.json()["active_behavior"] is None

    def test_budget_adherence(self, client):
        r = client.put(
            "/behavior/api-budget/settings",
            json={"budget_adherence_early_month": 0.9, "budget_adherence_current": 0.6},
        )
        assert r.status_code == 200
