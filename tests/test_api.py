"""
HTTP surface tests through FastAPI's TestClient, with prebuilt services.
"""

from dataclasses import replace

from certverify.errors import AnalysisError
from certverify.rate_limit import FixedWindowRateLimiter
from certverify.security import generate_auth_token

from conftest import AUTH_SECRET, FakeAnalysisClient


def bearer(user_id, secret=AUTH_SECRET):
    return {"Authorization": f"Bearer {generate_auth_token(user_id, secret)}"}


# ------------------------------------------------------------
# /verify
# ------------------------------------------------------------

def test_verify_returns_decision(client):
    r = client.post("/verify/u1/c1")

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["status"] == "verified"
    assert body["details"]["total_verification"] == "pass"
    assert body["confidence"]["is_passing"] is True
    assert body["error_kind"] is None
    assert body["request_id"] == r.headers["X-Request-ID"]


def test_verify_accepts_get(client):
    assert client.get("/verify/u1/c1").json()["status"] == "verified"


def test_second_verify_reports_already_verified(client, analysis_client):
    client.post("/verify/u1/c1")
    r = client.post("/verify/u1/c1")

    assert r.status_code == 200
    assert r.json()["message"] == "Certificate is already verified"
    assert len(analysis_client.calls) == 1


def test_unknown_certificate_is_404(client):
    r = client.post("/verify/u1/missing")

    assert r.status_code == 404
    assert r.json()["error_kind"] == "not_found"


def test_missing_documents_is_422(client):
    r = client.post("/verify/u1/c2")

    assert r.status_code == 422
    assert r.json()["error_kind"] == "data_incomplete"


def test_analysis_failure_is_502_and_retryable(make_client, services, make_orchestrator):
    failing = make_orchestrator(analysis_client=FakeAnalysisClient(error=AnalysisError("Analysis service unreachable")))
    client = make_client(replace(services, orchestrator=failing))

    r = client.post("/verify/u1/c1")

    assert r.status_code == 502
    assert r.json()["error_kind"] == "analysis_error"
    assert r.json()["retryable"] is True
    assert r.json()["status"] == "rejected"


def test_claimed_certificate_is_409(client, store):
    store.claim_certificate("c1", "other-run", 300)

    r = client.post("/verify/u1/c1")

    assert r.status_code == 409
    assert r.json()["error_kind"] == "verification_in_progress"


def test_invalid_identifier_is_400(client, analysis_client):
    r = client.post("/verify/u1/bad$id")

    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["code"] == 400
    assert "certificate_id" in body["error"]
    assert analysis_client.calls == []


def test_incoming_request_id_is_the_audit_correlation_id(client):
    r = client.post("/verify/u1/c1", headers={"X-Request-ID": "client-req-42"})

    assert r.headers["X-Request-ID"] == "client-req-42"
    logs = client.get("/logs/client-req-42").json()["logs"]
    assert logs[0]["step"] == "verification_status_updated"
    assert logs[-1]["step"] == "verification_started"


def test_malformed_request_id_is_replaced(client):
    r = client.post("/verify/u1/c1", headers={"X-Request-ID": "not valid!"})
    assert r.headers["X-Request-ID"] != "not valid!"


# ------------------------------------------------------------
# Rate limiting
# ------------------------------------------------------------

def test_verify_is_rate_limited(make_client, services, kv_store, clock):
    client = make_client(replace(services, verify_limiter=FixedWindowRateLimiter(kv_store, 2, clock=clock)))

    first = client.post("/verify/u1/c1")
    client.post("/verify/u1/c1")
    third = client.post("/verify/u1/c1")

    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert third.status_code == 429
    assert third.headers["X-RateLimit-Remaining"] == "0"
    assert int(third.headers["Retry-After"]) > 0
    assert third.json()["code"] == 429


# ------------------------------------------------------------
# Authentication
# ------------------------------------------------------------

def test_required_auth_rejects_missing_token(make_client, services):
    client = make_client(replace(services, require_auth=True))

    r = client.post("/verify/u1/c1")

    assert r.status_code == 401
    assert r.headers["WWW-Authenticate"] == "Bearer"


def test_token_for_another_user_is_403(make_client, services, analysis_client):
    client = make_client(replace(services, require_auth=True))

    r = client.post("/verify/u1/c1", headers=bearer("u2"))

    assert r.status_code == 403
    assert analysis_client.calls == []


def test_valid_token_is_accepted(make_client, services):
    client = make_client(replace(services, require_auth=True))
    assert client.post("/verify/u1/c1", headers=bearer("u1")).status_code == 200


def test_present_token_is_verified_even_when_optional(client):
    r = client.post("/verify/u1/c1", headers=bearer("u1", secret="forged"))
    assert r.status_code == 401


# ------------------------------------------------------------
# Logs
# ------------------------------------------------------------

def test_recent_logs_summarize_each_run(client):
    client.post("/verify/u1/c1", headers={"X-Request-ID": "run-1"})
    client.post("/verify/u1/c2", headers={"X-Request-ID": "run-2"})

    body = client.get("/logs", params={"limit": 10}).json()

    assert [e["request_id"] for e in body["logs"]] == ["run-2", "run-1"]
    assert body["logs"][0]["step"] == "missing_verification_documents"
    assert body["pagination"]["count"] == 2


def test_unknown_run_logs_are_404(client):
    assert client.get("/logs/never-ran").status_code == 404


def test_logs_limit_is_bounded(client):
    assert client.get("/logs", params={"limit": 1000}).status_code == 422


def test_durable_verification_logs(client):
    client.post("/verify/u1/c1")

    r = client.get("/users/u1/certificates/c1/verification-logs")

    assert r.status_code == 200
    steps = [(row["verification_step"], row["status"]) for row in r.json()["logs"]]
    assert steps == [("verification_completed", "verified"), ("verification_process", "started")]


def test_durable_logs_check_ownership(client):
    assert client.get("/users/u2/certificates/c1/verification-logs").status_code == 404


# ------------------------------------------------------------
# Health
# ------------------------------------------------------------

def test_health_ok(client):
    r = client.get("/health")

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["ok"] is True
    assert body["checks"]["kv_store"]["ok"] is True


def test_health_degraded_without_analysis_key(make_client, services):
    r = make_client(replace(services, api_key="")).get("/health")

    assert r.status_code == 200
    assert r.json()["status"] == "degraded"
    assert r.json()["checks"]["analysis_api_key"]["ok"] is False


def test_health_ok_without_secret_when_auth_is_optional(make_client, services):
    r = make_client(replace(services, auth_secret="", require_auth=False)).get("/health")

    assert r.json()["status"] == "ok"
    assert r.json()["checks"]["auth_secret"] == {"ok": True, "required": False}


def test_health_degraded_without_secret_when_auth_is_required(make_client, services):
    r = make_client(replace(services, auth_secret="", require_auth=True)).get("/health")

    assert r.json()["status"] == "degraded"
    assert r.json()["checks"]["auth_secret"]["ok"] is False
