import pytest
from fastapi.testclient import TestClient

from zephsole import auth, main
from zephsole.credits import redeem_credits
from zephsole.database import db_conn
from zephsole.fal_manager import NoActiveFalKeys
from zephsole.generation import FalGenerationError

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(auth, "ADMIN_TOKEN", "")
    return TestClient(main.app)


@pytest.fixture
def admin_headers(client, monkeypatch):
    monkeypatch.setattr(auth, "ADMIN_TOKEN", ADMIN_TOKEN)
    return {"X-Admin-Token": ADMIN_TOKEN}


def _register(client, email="ada@example.com", name="Ada", **extra):
    res = client.post("/api/auth/register", json={"email": email, "password": "secret123", "name": name, **extra})
    assert res.status_code == 200, res.text
    body = res.json()
    return {"headers": {"Authorization": f"Bearer {body['token']}"}, **body}


def _project(client, session, name="Trail Runner"):
    res = client.post(f"/api/workshops/{session['workshop_id']}/projects", json={"name": name},
                      headers=session["headers"])
    assert res.status_code == 200, res.text
    return res.json()["id"]


def test_health_sets_security_headers(client):
    res = client.get("/api/health")

    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"


def test_register_login_and_me(client):
    session = _register(client)
    assert session["user"]["email"] == "ada@example.com"
    assert "password_hash" not in session["user"]

    me = client.get("/api/me", headers=session["headers"]).json()
    assert [w["id"] for w in me["workshops"]] == [session["workshop_id"]]
    assert me["user"]["referral_code"] == "ada"

    assert client.post("/api/auth/login", json={"email": "ada@example.com", "password": "wrong"}).status_code == 401
    login = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "secret123"})
    assert login.status_code == 200


def test_logout_revokes_token(client):
    session = _register(client)
    assert client.post("/api/auth/logout", headers=session["headers"]).status_code == 200
    assert client.get("/api/me", headers=session["headers"]).status_code == 401


def test_token_query_parameter(client):
    session = _register(client)
    res = client.get("/api/me", params={"token": session["token"]})
    assert res.status_code == 200


def test_requires_auth(client):
    res = client.get("/api/workshops")
    assert res.status_code == 401
    assert res.json()["detail"] == "AUTH_REQUIRED"


def test_register_duplicate_email(client):
    _register(client)
    res = client.post("/api/auth/register", json={"email": "ADA@example.com", "password": "secret123"})
    assert res.status_code == 400


def test_register_with_referral_code(client):
    referrer = _register(client)
    newcomer = _register(client, email="lin@example.com", name="Lin", referral_code="ada")

    assert newcomer["referral"] == {"success": True}
    stats = client.get("/api/referrals/stats", headers=referrer["headers"]).json()
    assert stats["total_uses"] == 1


def test_credits_endpoints(client):
    session = _register(client)
    ws = session["workshop_id"]

    credits = client.get(f"/api/workshops/{ws}/credits", headers=session["headers"]).json()
    assert credits["balance"] == 5

    res = client.post(f"/api/workshops/{ws}/credits/redeem", json={"amount": 6}, headers=session["headers"])
    assert res.status_code == 402

    res = client.post(f"/api/workshops/{ws}/credits/redeem", json={"amount": 1, "asset_type": "research"},
                      headers=session["headers"])
    assert res.status_code == 200
    redemptions = client.get(f"/api/workshops/{ws}/redemptions", headers=session["headers"]).json()
    assert [r["amount"] for r in redemptions["redemptions"]] == [1]

    assert client.get("/api/pricing").json()["credit_costs"]["IMAGE_GENERATION_PRO"] == 0.6


def test_workshop_access_is_scoped_to_members(client):
    owner = _register(client)
    outsider = _register(client, email="out@example.com", name="Out")

    res = client.get(f"/api/workshops/{owner['workshop_id']}/projects", headers=outsider["headers"])
    assert res.status_code == 403

    project_id = _project(client, owner)
    assert client.get(f"/api/projects/{project_id}/canvas", headers=outsider["headers"]).status_code == 403


def test_members_invite_requires_manager_role(client):
    owner = _register(client)
    member = _register(client, email="lin@example.com", name="Lin")
    _register(client, email="kai@example.com", name="Kai")
    ws = owner["workshop_id"]

    res = client.post(f"/api/workshops/{ws}/members", json={"email": "lin@example.com"}, headers=owner["headers"])
    assert res.status_code == 200

    res = client.post(f"/api/workshops/{ws}/members", json={"email": "kai@example.com"}, headers=member["headers"])
    assert res.status_code == 403

    members = client.get(f"/api/workshops/{ws}/members", headers=member["headers"]).json()["members"]
    assert [m["role"] for m in members] == ["owner", "member"]


def test_project_lifecycle(client):
    session = _register(client)
    ws = session["workshop_id"]
    project_id = _project(client, session)
    headers = session["headers"]

    assert client.patch(f"/api/projects/{project_id}", json={"name": " Runner "}, headers=headers).status_code == 200
    assert client.post(f"/api/projects/{project_id}/pin", headers=headers).json()["is_pinned"] is True
    assert client.put(f"/api/projects/{project_id}/mode", json={"mode": "studio"}, headers=headers).status_code == 200
    res = client.put(f"/api/projects/{project_id}/unit-system", json={"unit_system": "yards"}, headers=headers)
    assert res.status_code == 400

    listed = client.get(f"/api/workshops/{ws}/projects", headers=headers).json()["projects"]
    assert listed[0]["name"] == "Runner"
    assert listed[0]["mode"] == "studio"

    workshop_slug = client.get("/api/me", headers=headers).json()["workshops"][0]["slug"]
    by_slug = client.get(f"/api/workshops/by-slug/{workshop_slug}/projects/{listed[0]['slug']}", headers=headers)
    assert by_slug.json()["project"]["id"] == project_id

    assert client.delete(f"/api/projects/{project_id}", headers=headers).status_code == 200
    assert client.get(f"/api/projects/{project_id}/canvas", headers=headers).status_code == 404


def test_classification_must_belong_to_project_workshop(client):
    session = _register(client)
    other = client.post("/api/workshops", json={"name": "Side"}, headers=session["headers"]).json()["workshop"]
    project_id = _project(client, session)

    res = client.post(f"/api/workshops/{other['id']}/classifications", json={"name": "Boots"},
                      headers=session["headers"])
    foreign_id = res.json()["id"]
    res = client.put(f"/api/projects/{project_id}/classification", json={"classification_id": foreign_id},
                     headers=session["headers"])
    assert res.status_code == 404


def test_studio_endpoints(client):
    session = _register(client)
    project_id = _project(client, session)
    headers = session["headers"]

    item = client.post(f"/api/projects/{project_id}/canvas", json={"type": "note", "data": {"text": "hi"},
                                                                    "x": 1, "y": 2}, headers=headers).json()
    assert client.patch(f"/api/canvas/{item['id']}", json={"x": 5, "y": 6}, headers=headers).status_code == 200
    assert client.get(f"/api/projects/{project_id}/canvas", headers=headers).json()["items"][0]["x"] == 5

    res = client.put(f"/api/projects/{project_id}/design-context", headers=headers, json={
        "footwear_type": "boot",
        "color_palette": [{"name": "Ink", "hex": "#111111"}],
    })
    assert res.status_code == 200
    context = client.get(f"/api/projects/{project_id}/design-context", headers=headers).json()["design_context"]
    assert context["color_palette"] == [{"name": "Ink", "hex": "#111111"}]

    res = client.put(f"/api/projects/{project_id}/product/baseline", headers=headers, json={
        "size_run": {"system": "EU", "sizes": [40, 41], "widths": ["D (Standard)"]},
        "heel_height": 10,
    })
    assert res.status_code == 200
    product = client.get(f"/api/projects/{project_id}/product", headers=headers).json()
    assert product["baseline"]["size_run"]["sizes"] == [40, 41]
    assert product["upper"] is None

    res = client.post(f"/api/projects/{project_id}/messages", json={"role": "user", "content": "hello"},
                      headers=headers)
    assert res.status_code == 200
    assert len(client.get(f"/api/projects/{project_id}/messages", headers=headers).json()["messages"]) == 1
    assert client.delete(f"/api/projects/{project_id}/messages", headers=headers).json()["deleted"] == 1


def test_generate_image_charges_after_success(client, monkeypatch):
    session = _register(client)
    project_id = _project(client, session)

    async def fake_generate(prompt, aspect_ratio=None, reference_image_urls=None):
        return {"provider": "fal", "kind": "image", "model": "fal-ai/nano-banana-pro", "aspect_ratio": "1:1",
                "request_id": "r1", "url": "https://x/boot.png"}

    monkeypatch.setattr(main, "generate_image_with_fal", fake_generate)

    payload = {"prompt": "high-top boot", "aspect_ratio": "1:1", "tool_call_id": "call-1"}
    res = client.post(f"/api/projects/{project_id}/generate/image", json=payload, headers=session["headers"])
    assert res.status_code == 200, res.text
    assert res.json()["generation"]["status"] == "completed"
    assert res.json()["generation"]["url"] == "https://x/boot.png"

    # Replaying the same tool call does not charge twice
    client.post(f"/api/projects/{project_id}/generate/image", json=payload, headers=session["headers"])

    credits = client.get(f"/api/workshops/{session['workshop_id']}/credits", headers=session["headers"]).json()
    assert credits["balance"] == pytest.approx(4.4)
    generations = client.get(f"/api/projects/{project_id}/generations", headers=session["headers"]).json()
    assert len(generations["generations"]) == 1


def test_generate_image_failure_records_error_without_charge(client, monkeypatch):
    session = _register(client)
    project_id = _project(client, session)

    async def failing_generate(prompt, aspect_ratio=None, reference_image_urls=None):
        raise FalGenerationError("Fal request failed: 500")

    monkeypatch.setattr(main, "generate_image_with_fal", failing_generate)

    res = client.post(f"/api/projects/{project_id}/generate/image",
                      json={"prompt": "mule", "tool_call_id": "call-9"}, headers=session["headers"])

    assert res.status_code == 502
    generation = client.get("/api/generations/call-9", headers=session["headers"]).json()["generation"]
    assert generation["status"] == "error"
    credits = client.get(f"/api/workshops/{session['workshop_id']}/credits", headers=session["headers"]).json()
    assert credits["balance"] == 5


def test_generate_image_without_keys_is_unavailable(client, monkeypatch):
    session = _register(client)
    project_id = _project(client, session)

    async def no_keys(prompt, aspect_ratio=None, reference_image_urls=None):
        raise NoActiveFalKeys("No active FAL keys configured")

    monkeypatch.setattr(main, "generate_image_with_fal", no_keys)

    res = client.post(f"/api/projects/{project_id}/generate/image", json={"prompt": "clog"},
                      headers=session["headers"])
    assert res.status_code == 503


def test_generate_image_requires_balance(client):
    session = _register(client)
    project_id = _project(client, session)
    client.post(f"/api/workshops/{session['workshop_id']}/credits/redeem", json={"amount": 4.9},
                headers=session["headers"])

    res = client.post(f"/api/projects/{project_id}/generate/image", json={"prompt": "sandal"},
                      headers=session["headers"])
    assert res.status_code == 402


def test_generate_image_balance_drained_during_generation(client, monkeypatch):
    session = _register(client)
    project_id = _project(client, session)

    async def draining_generate(prompt, aspect_ratio=None, reference_image_urls=None):
        con = db_conn()
        try:
            redeem_credits(con, session["workshop_id"], 4.9)
        finally:
            con.close()
        return {"provider": "fal", "kind": "image", "model": "fal-ai/nano-banana-pro", "aspect_ratio": "1:1",
                "request_id": "r2", "url": "https://x/slide.png"}

    monkeypatch.setattr(main, "generate_image_with_fal", draining_generate)

    res = client.post(f"/api/projects/{project_id}/generate/image",
                      json={"prompt": "slide", "tool_call_id": "call-drain"}, headers=session["headers"])

    assert res.status_code == 402
    generation = client.get("/api/generations/call-drain", headers=session["headers"]).json()["generation"]
    assert generation["status"] == "error"
    assert generation["url"] is None
    assert generation["error"] == "INSUFFICIENT_CREDITS"


def test_generation_records_are_scoped_to_project_members(client, monkeypatch):
    alice = _register(client)
    mallory = _register(client, email="mal@example.com", name="Mal")
    alice_project = _project(client, alice)
    mallory_project = _project(client, mallory, name="Copycat")

    async def fake_generate(prompt, aspect_ratio=None, reference_image_urls=None):
        return {"provider": "fal", "kind": "image", "model": "fal-ai/nano-banana-pro", "aspect_ratio": "1:1",
                "request_id": "r3", "url": f"https://x/{prompt}.png"}

    monkeypatch.setattr(main, "generate_image_with_fal", fake_generate)

    res = client.post(f"/api/projects/{alice_project}/generate/image",
                      json={"prompt": "alice", "tool_call_id": "call-A", "workflow_id": "wf-A"},
                      headers=alice["headers"])
    assert res.status_code == 200, res.text

    res = client.post(f"/api/projects/{mallory_project}/generate/image",
                      json={"prompt": "mallory", "tool_call_id": "call-A"}, headers=mallory["headers"])
    assert res.status_code == 409

    generations = client.get(f"/api/projects/{alice_project}/generations", headers=alice["headers"]).json()
    assert [g["prompt"] for g in generations["generations"]] == ["alice"]
    mallory_credits = client.get(f"/api/workshops/{mallory['workshop_id']}/credits",
                                 headers=mallory["headers"]).json()
    assert mallory_credits["balance"] == 5

    assert client.get("/api/generations/call-A", headers=mallory["headers"]).status_code == 403
    assert client.get("/api/generations/workflow/wf-A", headers=mallory["headers"]).status_code == 403
    assert client.get("/api/generations/workflow/wf-A", headers=alice["headers"]).json()["generation"]["url"] == \
        "https://x/alice.png"


def test_admin_routes_require_admin(client):
    session = _register(client)
    assert client.get("/api/admin/users", headers=session["headers"]).status_code == 403
    assert client.get("/api/admin/status", headers=session["headers"]).json()["is_admin"] is False


def test_admin_credit_grant_and_stats(client, admin_headers):
    session = _register(client)
    ws = session["workshop_id"]

    res = client.post(f"/api/admin/workshops/{ws}/credits", json={"amount": 10}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["new_balance"] == 15

    stats = client.get("/api/admin/stats", headers=admin_headers).json()
    assert stats["total_users"] == 1
    assert stats["total_credits_granted"] == 15


def test_admin_fal_key_management(client, admin_headers):
    res = client.post("/api/admin/fal/keys", json={"name": "Primary", "key": "abcdefgh12345678wxyz"},
                      headers=admin_headers)
    assert res.status_code == 200
    key_id = res.json()["id"]

    keys = client.get("/api/admin/fal/keys", headers=admin_headers).json()["keys"]
    assert keys[0]["name"] == "primary"
    assert keys[0]["key"] == "abcdefgh...wxyz"

    res = client.post(f"/api/admin/fal/keys/{key_id}/enabled", json={"enabled": False}, headers=admin_headers)
    assert res.status_code == 200
    health = client.get("/api/admin/fal/health", headers=admin_headers).json()
    assert health["status"] == "critical"

    res = client.post("/api/admin/fal/maintenance", json={}, headers=admin_headers)
    assert res.json()["status"] == "critical"
    loads = client.get("/api/admin/fal/loads", headers=admin_headers).json()
    assert loads["statistics"]["total_entries"] == 0

    assert client.delete(f"/api/admin/fal/keys/{key_id}", headers=admin_headers).status_code == 200
    assert client.get("/api/admin/fal/keys", headers=admin_headers).json()["keys"] == []


def test_admin_rejects_foreign_cron(client, admin_headers):
    res = client.delete("/api/admin/fal/crons/nightly-export", headers=admin_headers)
    assert res.status_code == 400


def test_site_assets_admin_and_public(client, admin_headers):
    res = client.post("/api/admin/site-assets", headers=admin_headers, json={
        "type": "landing", "object_key": "site/hero.png", "url": "https://cdn/hero.png",
        "file_name": "hero.png", "content_type": "image/png",
    })
    assert res.status_code == 200

    assets = client.get("/api/site-assets/landing").json()["assets"]
    assert [a["file_name"] for a in assets] == ["hero.png"]
    assert client.get("/api/site-assets/banner").status_code == 400


def test_personas_and_units(client):
    assert client.get("/api/personas/artist").json()["persona"]["name"] == "The Artist"
    units = client.get("/api/units").json()
    assert "inch" in units["unit_systems"]
    assert units["conversion_rates"]["inch_to_mm"] == 25.4
