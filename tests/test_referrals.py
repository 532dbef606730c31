import pytest
from fastapi import HTTPException

from zephsole.credits import get_available_credits
from zephsole.referrals import (
    MILESTONE_REWARD,
    ensure_referral_code,
    get_referral_stats,
    process_purchase_reward,
    register_referral,
    resolve_reward_workshop_id,
    set_preferred_reward_workshop,
)
from zephsole.workshops import FREE_CREDITS, create_workshop, ensure_personal_workshop


@pytest.fixture
def referrer(con, make_user):
    user = make_user(email="maya@example.com", name="Maya")
    workshop_id = ensure_personal_workshop(con, user["id"], user["name"])
    return {"id": user["id"], "workshop_id": workshop_id, "code": ensure_referral_code(con, user["id"])}


def test_referral_codes_are_unique(con, make_user):
    first = make_user(email="a@example.com", name="Sam")
    second = make_user(email="b@example.com", name="Sam")
    anonymous = make_user(email="c@example.com", name="!!")

    assert ensure_referral_code(con, first["id"]) == "sam"
    assert ensure_referral_code(con, second["id"]) == "sam1"
    assert ensure_referral_code(con, first["id"]) == "sam"
    assert ensure_referral_code(con, anonymous["id"]) == "user"
    assert ensure_referral_code(con, "missing") is None


def test_register_referral_rejections(con, make_user, referrer):
    newcomer = make_user(email="new@example.com", name="New")

    assert register_referral(con, newcomer["id"], "nope") == {"success": False, "error": "Invalid referral code"}
    assert register_referral(con, referrer["id"], referrer["code"])["error"] == "Cannot refer yourself"
    assert register_referral(con, newcomer["id"], referrer["code"]) == {"success": True}
    assert register_referral(con, newcomer["id"], referrer["code"])["error"] == "User already referred"
    assert get_referral_stats(con, referrer["id"]) == {"total_uses": 1, "referral_code": "maya"}


def test_milestone_grants_reward_once_per_five(con, make_user, referrer):
    for i in range(4):
        register_referral(con, make_user(email=f"r{i}@example.com", name=f"R{i}")["id"], referrer["code"])
    assert get_available_credits(con, referrer["workshop_id"])["balance"] == FREE_CREDITS

    register_referral(con, make_user(email="r4@example.com", name="R4")["id"], referrer["code"])
    assert get_available_credits(con, referrer["workshop_id"])["balance"] == FREE_CREDITS + MILESTONE_REWARD

    register_referral(con, make_user(email="r5@example.com", name="R5")["id"], referrer["code"])
    assert get_available_credits(con, referrer["workshop_id"])["balance"] == FREE_CREDITS + MILESTONE_REWARD


def test_preferred_workshop_receives_rewards(con, referrer):
    other = create_workshop(con, "Side Project", referrer["id"])

    assert resolve_reward_workshop_id(con, referrer["id"]) == referrer["workshop_id"]
    set_preferred_reward_workshop(con, referrer["id"], other)
    assert resolve_reward_workshop_id(con, referrer["id"]) == other


def test_preferred_workshop_requires_membership(con, make_user, referrer):
    stranger = make_user(email="s@example.com", name="S")
    stranger_ws = create_workshop(con, "Elsewhere", stranger["id"])

    with pytest.raises(HTTPException) as exc:
        set_preferred_reward_workshop(con, referrer["id"], stranger_ws)
    assert exc.value.status_code == 403


def test_purchase_reward(con, make_user, referrer):
    buyer = make_user(email="buyer@example.com", name="Buyer")
    assert process_purchase_reward(con, buyer["id"], 50) is None

    register_referral(con, buyer["id"], referrer["code"])
    grant_id = process_purchase_reward(con, buyer["id"], 50)

    assert grant_id is not None
    assert get_available_credits(con, referrer["workshop_id"])["balance"] == pytest.approx(FREE_CREDITS + 5)
    status = con.execute("SELECT status FROM referrals WHERE referred_id = ?", (buyer["id"],)).fetchone()["status"]
    assert status == "purchased"
