import pytest
from httpx import ASGITransport, AsyncClient

from simleague.api.deps import get_admin_allowlist, get_event_end_notifier
from simleague.db.session import get_db
from simleague.main import app

from conftest import ADMIN_EMAIL, auth_headers, event_payload

ADMIN = auth_headers("admin-1", ADMIN_EMAIL)
PLAYER = auth_headers("player-1", "player@example.com")


@pytest.fixture
async def client(session_factory, ended_events):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_admin_allowlist] = lambda: frozenset({ADMIN_EMAIL})
    app.dependency_overrides[get_event_end_notifier] = lambda: ended_events.append
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create_event(client, code="SPRING"):
    resp = await client.post("/api/admin/events", json=event_payload(code), headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()["event"]


async def test_admin_routes_require_admin(client):
    resp = await client.get("/api/admin/events")
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthenticated"

    resp = await client.get("/api/admin/events", headers=PLAYER)
    assert resp.status_code == 403
    assert resp.json() == {"error": "forbidden", "message": "Admin access required"}

    me = await client.get("/api/admin/me", headers=PLAYER)
    assert me.json() == {"id": "player-1", "email": "player@example.com", "is_admin": False}


async def test_event_lifecycle_over_http(client, ended_events):
    created = await _create_event(client)
    assert created["state"] == "active"
    assert created["code"] == "SPRING"

    dup = await client.post("/api/admin/events", json=event_payload("SPRING"), headers=ADMIN)
    assert dup.status_code == 409

    public = await client.get("/api/events/public")
    assert [e["code"] for e in public.json()["events"]] == ["SPRING"]
    assert "sim_url" not in public.json()["events"][0]

    resp = await client.post("/api/admin/events/SPRING/start", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["event"]["state"] == "live"
    assert resp.json()["event"]["started_at"] is not None

    resp = await client.post("/api/admin/events/SPRING/state", json={"action": "end"}, headers=ADMIN)
    assert resp.json()["changed"] is True
    resp = await client.post("/api/admin/events/SPRING/end", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["changed"] is False
    assert ended_events == ["SPRING"]

    resp = await client.post("/api/admin/events/SPRING/start", headers=ADMIN)
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"

    public = await client.get("/api/events/public")
    assert public.json()["events"] == []

    ended = await client.get("/api/admin/events", params={"state": "ended"}, headers=ADMIN)
    assert [e["code"] for e in ended.json()["events"]] == ["SPRING"]


async def test_unknown_event_and_bad_payload(client):
    resp = await client.get("/api/events/UNKNOWN")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"

    resp = await client.post("/api/admin/events", json={"code": "X"}, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_failed"

    resp = await client.post("/api/admin/events", json=event_payload("lower"), headers=ADMIN)
    assert resp.status_code == 400


async def test_run_flow_and_leaderboard(client):
    await _create_event(client)
    resp = await client.post("/api/runs/create", json={"eventCode": "SPRING"}, headers=PLAYER)
    assert resp.status_code == 201
    run_id = resp.json()["runId"]
    assert resp.json()["simUrl"].endswith(f"?run_id={run_id}")

    early = await client.post("/api/runs/submit", json={"runId": run_id, "score": 3.0}, headers=PLAYER)
    assert early.status_code == 409

    await client.post("/api/admin/events/SPRING/start", headers=ADMIN)
    ok = await client.post("/api/runs/submit", json={"runId": run_id, "score": 3.0, "pnl": 1.5}, headers=PLAYER)
    assert ok.status_code == 200
    assert ok.json() == {"success": True, "run_id": run_id}

    again = await client.post("/api/runs/submit", json={"runId": run_id, "score": 9.0}, headers=PLAYER)
    assert again.status_code == 409

    other = auth_headers("player-2")
    stolen = await client.post("/api/runs/submit", json={"runId": run_id, "score": 9.0}, headers=other)
    assert stolen.status_code == 403

    board = await client.get("/api/events/SPRING/leaderboard", params={"limit": 500})
    assert board.status_code == 200
    entries = board.json()["leaderboard"]
    assert [(e["run_id"], e["score"], e["label"]) for e in entries] == [(run_id, 3.0, "pl***@example.com")]

    history = await client.get("/api/runs/history", headers=PLAYER)
    assert [r["run_id"] for r in history.json()["runs"]] == [run_id]

    detail = await client.get(f"/api/runs/{run_id}", headers=other)
    assert detail.status_code == 403
    detail = await client.get(f"/api/runs/{run_id}", headers=ADMIN)
    assert detail.json()["run"]["result"]["score"] == 3.0


@pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
async def test_submit_rejects_non_finite_score(client, literal):
    await _create_event(client)
    await client.post("/api/admin/events/SPRING/start", headers=ADMIN)
    run_id = (await client.post("/api/runs/create", json={"eventCode": "SPRING"}, headers=PLAYER)).json()["runId"]

    resp = await client.post(
        "/api/runs/submit",
        content=f'{{"runId": "{run_id}", "score": {literal}}}',
        headers={**PLAYER, "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_failed"

    board = await client.get("/api/events/SPRING/leaderboard")
    assert board.json()["leaderboard"] == []


async def test_identity_errors(client):
    await _create_event(client)
    resp = await client.post(
        "/api/runs/create",
        json={"eventCode": "SPRING"},
        headers={**PLAYER, "x-user-id": "someone-else"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "identity_mismatch"

    resp = await client.post("/api/runs/create", json={"eventCode": "SPRING"}, headers={"x-user-id": "player-1"})
    assert resp.status_code == 401

    resp = await client.get("/api/runs/history", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_credential"


async def test_sim_admin_link_round_trip(client):
    await _create_event(client)
    resp = await client.post("/api/admin/sim-admin-link", json={"eventCode": "SPRING"}, headers=ADMIN)
    assert resp.status_code == 200
    link = resp.json()
    assert link["adminUrl"].startswith("https://sim.example.com/play/admin.html?event_code=SPRING&admin_token=")

    check = await client.get(
        "/api/admin/validate-token", params={"event_code": "SPRING", "admin_token": link["token"]}
    )
    assert check.json() == {"ok": True, "eventCode": "SPRING", "adminUserId": "admin-1"}

    mismatch = await client.get(
        "/api/admin/validate-token", params={"event_code": "OTHER", "admin_token": link["token"]}
    )
    assert mismatch.status_code == 401
    assert mismatch.json()["error"] == "token_event_mismatch"

    await client.post("/api/admin/events/SPRING/end", headers=ADMIN)
    closed = await client.get("/api/admin/events/SPRING/sim-admin-link", headers=ADMIN)
    assert closed.status_code == 409


async def test_metrics_endpoint(client):
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "events_created_total" in resp.text
