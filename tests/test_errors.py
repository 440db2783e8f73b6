"""
Tests for error handling: structured error responses, HTTP status codes,
and the custom exception classes.
"""
from nudge.core.errors import (
    InterventionNotFoundError,
    PersistenceError,
    ResponseAlreadyRecordedError,
    WinNotFoundError,
)


# ---------------------------------------------------------------------------
# Unit tests on exception classes
# ---------------------------------------------------------------------------

class TestExceptionClasses:
    def test_persistence_error(self):
        err = PersistenceError("save_profile", user_id="user-1")
        assert err.http_status == 503
        assert err.code == "PERSISTENCE_ERROR"
        assert "save_profile" in err.message
        d = err.to_dict()
        assert d["details"] == {"operation": "save_profile", "user_id": "user-1"}

    def test_intervention_not_found(self):
        err = InterventionNotFoundError("i-1")
        assert err.http_status == 404
        assert err.code == "INTERVENTION_NOT_FOUND"

    def test_response_already_recorded(self):
        err = ResponseAlreadyRecordedError("i-1", "dismissed")
        assert err.http_status == 409
        assert err.to_dict()["details"] == {"intervention_id": "i-1", "response": "dismissed"}

    def test_win_not_found(self):
        err = WinNotFoundError("w-1")
        assert err.http_status == 404
        assert err.code == "WIN_NOT_FOUND"


# ---------------------------------------------------------------------------
# HTTP error envelope
# ---------------------------------------------------------------------------

class TestErrorResponses:
    def test_unknown_intervention_404(self, client):
        r = client.post(
            "/behavior/errors-user/interventions/missing/response",
            json={"response": "engaged"},
        )
        assert r.status_code == 404
        body = r.json()
        assert body["code"] == "INTERVENTION_NOT_FOUND"
        assert body["details"]["intervention_id"] == "missing"

    def test_unknown_win_404(self, client):
        r = client.post("/behavior/errors-user/wins/missing/celebrate")
        assert r.status_code == 404
        assert r.json()["code"] == "WIN_NOT_FOUND"

    def test_invalid_response_value_422(self, client):
        r = client.post(
            "/behavior/errors-user/interventions/any/response",
            json={"response": "loved_it"},
        )
        assert r.status_code == 422
        body = r.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert any(e["field"] == "response" for e in body["details"]["errors"])

    def test_adherence_out_of_range_422(self, client):
        r = client.put("/behavior/errors-user/settings", json={"budget_adherence_current": 1.5})
        assert r.status_code == 422
