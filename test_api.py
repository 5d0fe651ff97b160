"""HTTP surface tests through Flask's test client."""

import importlib
import sys

import pytest

from app import create_app
from config import Settings

ORG = "org_api"

SELLER = {"X-Organization-Id": ORG, "X-Actor-Id": "seller_1"}
ADMIN = {
    "X-Organization-Id": ORG,
    "X-Actor-Id": "admin_1",
    "X-Permissions": "holds:approve,holds:view_all,exclusivity:manage,inventory:manage",
}


@pytest.fixture
def app(tmp_path):
    app = create_app(Settings(database_url=f"sqlite:///{tmp_path / 'api.db'}"), start_sweeper=False)
    app.config.update(TESTING=True)
    yield app
    app.extensions["inventory"]["db"].drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def episode_id(client):
    r = client.post("/shows/show_api", json={"name": "API Show", "default_episode_length": 45}, headers=ADMIN)
    assert r.status_code == 201
    r = client.post("/schedules/bind", json={
        "items": [{"show_id": "show_api", "air_date": "2030-03-01", "placement_type": "pre-roll"}],
    }, headers=ADMIN)
    assert r.status_code == 201
    return r.get_json()["created"][0]["episode_id"]


def inventory(client, episode_id):
    body = client.get(f"/episodes/{episode_id}/inventory", headers=SELLER).get_json()
    return {row["placement_type"]: row for row in body["inventory"]}


# ============================================================================
# Identity and health
# ============================================================================

def test_health_needs_no_identity(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json()["status"] == "healthy"


def test_missing_identity_is_rejected(client):
    r = client.get("/holds")
    assert r.status_code == 401
    assert r.get_json()["code"] == "unauthenticated"


def test_show_registration_requires_permission(client):
    r = client.post("/shows/show_x", json={"name": "X"}, headers=SELLER)
    assert r.status_code == 403
    assert r.get_json()["code"] == "permission_denied"


# ============================================================================
# Hold lifecycle
# ============================================================================

def test_hold_lifecycle(client, episode_id):
    # 45 minute episode: 1 pre-roll (already held by the bind), 2 mid-roll, 1 post-roll
    r = client.post("/holds", json={
        "episode_id": episode_id, "placement_type": "mid-roll", "order_id": "ord_1", "ttl_seconds": 600,
    }, headers=SELLER)
    assert r.status_code == 201
    hold = r.get_json()
    assert hold["status"] == "reserved"
    assert hold["approval_status"] == "pending"
    assert inventory(client, episode_id)["mid-roll"]["reserved"] == 1

    r = client.post(f"/holds/{hold['id']}/approve", headers=SELLER)
    assert r.status_code == 403

    r = client.post(f"/holds/{hold['id']}/approve", headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json()["status"] == "confirmed"
    assert inventory(client, episode_id)["mid-roll"]["booked"] == 1

    r = client.post(f"/holds/{hold['id']}/reject", json={"reason": "too late"}, headers=ADMIN)
    assert r.status_code == 409
    assert r.get_json()["code"] == "invalid_transition"

    changes = client.get(f"/episodes/{episode_id}/changes", headers=SELLER).get_json()["changes"]
    assert [c["change_type"] for c in changes][-2:] == ["hold_created", "hold_approved"]


def test_reject_without_body(client, episode_id):
    hold = client.post("/holds", json={"episode_id": episode_id, "placement_type": "post-roll"},
                       headers=SELLER).get_json()
    r = client.post(f"/holds/{hold['id']}/reject", headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json()["status"] == "released"
    assert inventory(client, episode_id)["post-roll"]["available"] == 1


def test_capacity_exhausted_returns_conflict(client, episode_id):
    r = client.post("/holds", json={"episode_id": episode_id, "placement_type": "pre-roll"}, headers=SELLER)
    assert r.status_code == 409
    body = r.get_json()
    assert body["code"] == "insufficient_capacity"
    assert body["details"]["available"] == 0


@pytest.mark.parametrize("payload, field", [
    ({"placement_type": "pre-roll"}, "episode_id"),
    ({"episode_id": "ep_x", "placement_type": "pre-roll", "count": 0}, "count"),
    ({"episode_id": "ep_x", "placement_type": "pre-roll", "count": True}, "count"),
    ({"episode_id": "ep_x", "placement_type": "pre-roll", "unit_price": "cheap"}, "unit_price"),
])
def test_malformed_hold_requests(client, payload, field):
    r = client.post("/holds", json=payload, headers=SELLER)
    assert r.status_code == 400
    assert field in r.get_json()["error"]


def test_non_json_body_rejected(client):
    r = client.post("/holds", data="episode_id=1", headers=SELLER)
    assert r.status_code == 400
    assert r.get_json()["code"] == "invalid_request"


def test_unknown_hold_is_404(client):
    r = client.post("/holds/res_missing/approve", headers=ADMIN)
    assert r.status_code == 404


def test_list_holds_visibility(client, episode_id):
    client.post("/holds", json={"episode_id": episode_id, "placement_type": "mid-roll"}, headers=SELLER)

    mine = client.get("/holds", headers=SELLER).get_json()["holds"]
    everyone = client.get("/holds", headers=ADMIN).get_json()["holds"]
    assert len(mine) == 1
    assert len(everyone) == 2
    assert client.get("/holds?status=bogus", headers=ADMIN).status_code == 400


# ============================================================================
# Schedules, exclusivity, sweep and audit
# ============================================================================

def test_partial_bind_returns_multi_status(client, episode_id):
    r = client.post("/schedules/bind", json={
        "order_id": "ord_7",
        "items": [
            {"show_id": "show_api", "air_date": "2030-03-01", "placement_type": "post-roll", "price": 80},
            {"show_id": "show_api", "air_date": "2030-03-01", "placement_type": "pre-roll"},
        ],
    }, headers=SELLER)
    assert r.status_code == 207
    body = r.get_json()
    assert len(body["created"]) == 1
    assert body["errors"][0]["index"] == 1
    assert body["errors"][0]["code"] == "insufficient_capacity"


def test_bind_validates_items(client):
    r = client.post("/schedules/bind", json={"items": [{"show_id": "s", "air_date": "March 1"}]},
                    headers=SELLER)
    assert r.status_code == 400
    assert r.get_json()["details"]["index"] == 0


def test_exclusivity_rule_blocks_competing_hold(client, episode_id):
    r = client.post("/exclusivity-rules", json={
        "show_id": "show_api", "category": "beverages", "level": "show",
        "start_date": "2030-02-01", "end_date": "2030-03-31", "advertiser_id": "adv_cola",
    }, headers=ADMIN)
    assert r.status_code == 201
    rule_id = r.get_json()["id"]

    r = client.post("/holds", json={
        "episode_id": episode_id, "placement_type": "mid-roll",
        "category": "beverages", "advertiser_id": "adv_soda",
    }, headers=SELLER)
    assert r.status_code == 409
    assert r.get_json()["code"] == "exclusivity_conflict"

    r = client.post(f"/exclusivity-rules/{rule_id}/active", json={"is_active": False}, headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json()["is_active"] is False

    r = client.post("/holds", json={
        "episode_id": episode_id, "placement_type": "mid-roll",
        "category": "beverages", "advertiser_id": "adv_soda",
    }, headers=SELLER)
    assert r.status_code == 201

    rules = client.get("/exclusivity-rules?show_id=show_api", headers=SELLER).get_json()["rules"]
    assert [rule["id"] for rule in rules] == [rule_id]


def test_sweep_and_audit(client, episode_id):
    assert client.post("/sweep", headers=SELLER).status_code == 403

    r = client.post("/sweep", headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json() == {"released": 0}

    r = client.get("/inventory/audit", headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json() == {"mismatches": [], "count": 0}


def test_ledger_repair_defaults_to_dry_run(client, episode_id):
    assert client.post("/inventory/repair", headers=SELLER).status_code == 403

    r = client.post("/inventory/repair", headers=ADMIN)
    assert r.status_code == 200
    assert r.get_json() == {"dry_run": True, "repairs": [], "applied": 0}

    r = client.post("/inventory/repair", json={"dry_run": "no"}, headers=ADMIN)
    assert r.status_code == 400

    r = client.post("/inventory/repair", json={"dry_run": False}, headers=ADMIN)
    assert r.get_json()["dry_run"] is False


def test_wsgi_module_exposes_configured_app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'wsgi.db'}")
    monkeypatch.setenv("ENABLE_SWEEPER", "false")
    monkeypatch.delitem(sys.modules, "wsgi", raising=False)

    wsgi = importlib.import_module("wsgi")
    try:
        assert wsgi.app.test_client().get("/health").get_json()["status"] == "healthy"
        assert not wsgi.app.extensions["inventory"]["sweeper"].running
    finally:
        wsgi.app.extensions["inventory"]["db"].drop_all()
        sys.modules.pop("wsgi", None)
