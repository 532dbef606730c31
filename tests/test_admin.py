import pytest
from fastapi import HTTPException

from zephsole import admin
from zephsole.auth import get_user_by_email
from zephsole.credits import get_available_credits, redeem_credits
from zephsole.workshops import create_workshop


def test_current_admin_status():
    assert admin.current_admin_status(None) == {"user_id": None, "role": None, "is_admin": False}
    assert admin.current_admin_status({"id": "u1", "role": "admin"})["is_admin"] is True


def test_grant_credits_to_workshop(con, make_user):
    owner = make_user()
    workshop_id = create_workshop(con, "Atelier", owner["id"])

    result = admin.grant_credits_to_workshop(con, "admin-1", workshop_id, 20, description="beta tester",
                                             expires_in_days=0.5)

    assert result["success"] is True
    assert result["workshop_name"] == "Atelier"
    assert result["new_balance"] == 25
    grant = con.execute("SELECT * FROM credit_grants WHERE id = ?", (result["grant_id"],)).fetchone()
    assert grant["source"] == "platform_admin"
    assert grant["expires_at_ms"] - grant["starts_at_ms"] == 24 * 60 * 60 * 1000


def test_grant_credits_to_workshop_errors(con, make_user):
    owner = make_user()
    workshop_id = create_workshop(con, "Atelier", owner["id"])

    with pytest.raises(HTTPException) as exc:
        admin.grant_credits_to_workshop(con, None, workshop_id, -1)
    assert exc.value.status_code == 400
    with pytest.raises(HTTPException) as exc:
        admin.grant_credits_to_workshop(con, None, "missing", 1)
    assert exc.value.status_code == 404


def test_list_workshops_for_credits(con, make_user):
    owner = make_user()
    create_workshop(con, "Atelier", owner["id"])
    create_workshop(con, "Sole Lab", owner["id"])

    assert len(admin.list_workshops_for_credits(con)) == 2
    found = admin.list_workshops_for_credits(con, search="SOLE")
    assert [w["slug"] for w in found] == ["sole-lab"]
    assert found[0]["balance"] == 0
    assert len(admin.list_workshops_for_credits(con, limit=1)) == 1


def test_create_user_and_role(con):
    created = admin.create_user(con, "Zoe@Example.com", mark_email_verified=True)
    assert created["email"] == "zoe@example.com"
    assert get_user_by_email(con, "zoe@example.com")["email_verified"] == 1

    admin.set_user_role_for_admin(con, "zoe@example.com", "admin")
    assert admin.list_users_for_admin(con, search="zoe")[0]["role"] == "admin"

    with pytest.raises(HTTPException):
        admin.set_user_role_for_admin(con, "zoe@example.com", "superuser")
    with pytest.raises(HTTPException) as exc:
        admin.set_user_role_for_admin(con, "ghost@example.com", "admin")
    assert exc.value.status_code == 404


def test_create_workshop_for_user_with_credits(con, make_user):
    make_user()

    result = admin.create_workshop_for_user(con, "ada@example.com", "  Pilot Shop ", initial_credits=12)

    assert result["slug"] == "pilot-shop"
    assert get_available_credits(con, result["workshop_id"])["balance"] == 12
    cached = con.execute("SELECT credits FROM workshops WHERE id = ?", (result["workshop_id"],)).fetchone()
    assert cached["credits"] == 12
    members = admin.list_workshop_members_for_admin(con, result["workshop_id"])
    assert [(m["email"], m["role"]) for m in members] == [("ada@example.com", "owner")]


def test_add_user_to_workspace(con, make_user):
    owner = make_user()
    make_user(email="lin@example.com", name="Lin")
    workshop_id = create_workshop(con, "Atelier", owner["id"])

    assert admin.add_user_to_workspace(con, workshop_id, "lin@example.com", "member")["success"] is True
    with pytest.raises(HTTPException) as exc:
        admin.add_user_to_workspace(con, workshop_id, "lin@example.com", "admin")
    assert exc.value.detail == "ALREADY_MEMBER"
    with pytest.raises(HTTPException):
        admin.add_user_to_workspace(con, workshop_id, "lin@example.com", "owner")


def test_platform_stats(con, make_user):
    owner = make_user()
    workshop_id = create_workshop(con, "Atelier", owner["id"])
    redeem_credits(con, workshop_id, 2)

    stats = admin.get_platform_stats(con)

    assert stats["total_users"] == 1
    assert stats["total_workshops"] == 1
    assert stats["total_memberships"] == 1
    assert stats["total_credits_granted"] == 5
    assert stats["total_credits_remaining"] == 3
    assert stats["total_credits_used"] == 2
