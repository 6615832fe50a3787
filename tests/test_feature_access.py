from __future__ import annotations

import pytest

from review_game.services import feature_access as fa


def _p(tier="FREE", status="FREE", **kw):
    return {"id": "u1", "subscription_tier": tier, "subscription_status": status, **kw}


def test_invalid_tier_and_status_fall_back():
    assert fa.get_tier(_p(tier="GOLD")) == "FREE"
    assert fa.get_tier({}) == "FREE"
    assert fa.get_status(_p(status="weird")) == "INACTIVE"
    assert fa.get_tier(_p(tier="premium")) == "PREMIUM"


def test_free_tier_game_quota():
    assert fa.can_create_game(_p(games_created_count=2))
    assert not fa.can_create_game(_p(games_created_count=3))
    assert not fa.can_create_game(None)


def test_paid_tiers_need_a_creation_status():
    assert fa.can_create_game(_p("BASIC", "ACTIVE", games_created_count=50))
    assert fa.can_create_game(_p("PREMIUM", "TRIAL"))
    assert not fa.can_create_game(_p("BASIC", "CANCELLED"))
    assert not fa.can_create_game(_p("BASIC", "INACTIVE"))


@pytest.mark.parametrize(
    "profile,expected",
    [
        (None, 5),
        (_p(), 5),
        (_p("BASIC", "ACTIVE"), 10),
        (_p("BASIC", "CANCELLED"), 5),
        (_p("PREMIUM", "TRIAL"), 15),
        (_p("PREMIUM", "INACTIVE"), 5),
    ],
)
def test_max_teams(profile, expected):
    assert fa.get_max_teams(profile) == expected


def test_feature_gates_follow_tier_and_activity():
    basic = _p("BASIC", "ACTIVE")
    assert fa.can_access_feature(basic, "custom_question_banks")
    assert fa.can_access_feature(basic, "custom_team_names")
    assert not fa.can_access_feature(basic, "ai")

    premium = _p("PREMIUM", "ACTIVE")
    assert fa.can_access_feature(premium, "analytics")

    lapsed = _p("PREMIUM", "CANCELLED")
    assert not fa.can_access_feature(lapsed, "video_images")

    with pytest.raises(KeyError):
        fa.can_access_feature(basic, "teleportation")


def test_feature_list_shape():
    features = fa.get_feature_list(_p("BASIC", "ACTIVE"))
    ids = [f["id"] for f in features]
    assert "custom_question_banks" in ids and "google_classroom" in ids
    by_id = {f["id"]: f for f in features}
    assert by_id["video_images"]["enabled"] is True
    assert by_id["ai"]["enabled"] is False
    assert by_id["ai"]["requiredTier"] == "PREMIUM"


def test_bank_access_rules():
    custom = {"id": "b1", "is_custom": True, "owner_id": "u1"}
    prebuilt = {"id": "b2", "is_custom": False}

    assert fa.can_access_bank(_p(), custom)
    assert not fa.can_access_bank({**_p(), "id": "u2"}, custom)
    assert fa.can_access_bank(_p("BASIC", "ACTIVE"), prebuilt)
    assert not fa.can_access_bank(_p(), prebuilt)
    assert fa.can_access_bank(_p(accessible_prebuilt_bank_ids=["b2", 7]), prebuilt)
    assert not fa.can_access_bank(_p(accessible_prebuilt_bank_ids=[2]), {"id": 2, "is_custom": False})


def test_bank_read_rules():
    assert fa.can_read_bank("anyone", {"id": "b", "is_public": True})
    assert fa.can_read_bank("u1", {"id": "b", "owner_id": "u1"})
    assert not fa.can_read_bank("u2", {"id": "b", "owner_id": "u1"})
    assert not fa.can_read_bank("u1", None)


def test_custom_bank_slots():
    assert fa.remaining_custom_bank_slots(_p()) == 0
    assert fa.remaining_custom_bank_slots(_p("PREMIUM", "ACTIVE", custom_bank_count=99)) is None
    assert fa.remaining_custom_bank_slots(_p("BASIC", "ACTIVE", custom_bank_count=4)) == 11
    assert fa.remaining_custom_bank_slots(_p("BASIC", "ACTIVE", custom_bank_count=20)) == 0
