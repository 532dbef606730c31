import pytest
from fastapi import HTTPException

from zephsole.config import WorkshopRole
from zephsole.credits import get_available_credits
from zephsole.workshops import (
    FREE_CREDITS,
    backfill_credits,
    create_workshop,
    ensure_personal_workshop,
    get_members,
    get_workshop,
    get_workshops,
    invite_member,
    require_workshop_member,
    require_workshop_role,
    slugify,
)


def test_slugify():
    assert slugify("  Nike SB / Dunk Lab ") == "nike-sb-dunk-lab"
    assert slugify("!!!") == "workshop"
    assert slugify("???", fallback="user") == "user"


def test_first_owned_workshop_gets_free_credits_only(con, make_user):
    owner = make_user()
    first = create_workshop(con, "Studio", owner["id"])
    second = create_workshop(con, "Studio", owner["id"])

    assert get_available_credits(con, first)["balance"] == FREE_CREDITS
    assert get_available_credits(con, second)["balance"] == 0
    assert get_workshop(con, first)["slug"] == "studio"
    assert get_workshop(con, second)["slug"] == "studio-1"
    assert [w["id"] for w in get_workshops(con, owner["id"])] == [first, second]


def test_ensure_personal_workshop_is_idempotent(con, make_user):
    user = make_user(name="Grace Hopper")

    workshop_id = ensure_personal_workshop(con, user["id"], user["name"])

    assert ensure_personal_workshop(con, user["id"], user["name"]) == workshop_id
    workshop = get_workshop(con, workshop_id)
    assert workshop["name"] == "Grace Hopper's Workshop"
    assert workshop["slug"] == "grace-hopper"
    assert workshop["credits"] == FREE_CREDITS
    referral_code = con.execute("SELECT referral_code FROM users WHERE id = ?", (user["id"],)).fetchone()[0]
    assert referral_code == "gracehop"


def test_invite_member(con, make_user):
    owner = make_user()
    guest = make_user(email="lin@example.com", name="Lin")
    workshop_id = create_workshop(con, "Studio", owner["id"])

    membership_id = invite_member(con, workshop_id, "LIN@example.com", WorkshopRole.MEMBER)

    assert invite_member(con, workshop_id, "lin@example.com", WorkshopRole.ADMIN) == membership_id
    members = get_members(con, workshop_id)
    assert [(m["email"], m["role"]) for m in members] == [
        ("ada@example.com", "owner"),
        ("lin@example.com", "member"),
    ]
    assert "password_hash" not in members[0]
    assert require_workshop_member(con, workshop_id, guest["id"])["role"] == "member"


def test_invite_member_errors(con, make_user):
    owner = make_user()
    workshop_id = create_workshop(con, "Studio", owner["id"])

    with pytest.raises(HTTPException) as exc:
        invite_member(con, workshop_id, "nobody@example.com", WorkshopRole.MEMBER)
    assert exc.value.status_code == 404

    with pytest.raises(HTTPException) as exc:
        invite_member(con, workshop_id, "ada@example.com", WorkshopRole.OWNER)
    assert exc.value.status_code == 400


def test_guards(con, make_user):
    owner = make_user()
    member = make_user(email="lin@example.com", name="Lin")
    outsider = make_user(email="out@example.com", name="Out")
    workshop_id = create_workshop(con, "Studio", owner["id"])
    invite_member(con, workshop_id, member["email"], WorkshopRole.MEMBER)

    with pytest.raises(HTTPException) as exc:
        require_workshop_member(con, workshop_id, outsider["id"])
    assert exc.value.detail == "WORKSHOP_ACCESS_DENIED"

    with pytest.raises(HTTPException) as exc:
        require_workshop_role(con, workshop_id, member["id"], (WorkshopRole.OWNER, WorkshopRole.ADMIN))
    assert exc.value.detail == "WORKSHOP_ROLE_FORBIDDEN"

    assert require_workshop_role(con, workshop_id, owner["id"], (WorkshopRole.OWNER,))["role"] == "owner"


def test_backfill_credits(con, make_user):
    owner = make_user()
    workshop_id = create_workshop(con, "Studio", owner["id"])
    con.execute("UPDATE workshops SET credits = NULL WHERE id = ?", (workshop_id,))
    con.commit()

    assert backfill_credits(con) == 1
    assert get_workshop(con, workshop_id)["credits"] == 0
    assert backfill_credits(con) == 0
