from __future__ import annotations

from typing import Any

from ..observability.logging import get_logger
from ..repositories.profiles_repo import DEFAULT_CUSTOM_BANK_LIMIT, FREE_TIER_GAME_LIMIT

log = get_logger("feature_access")

TIERS = ("FREE", "BASIC", "PREMIUM")
STATUSES = ("FREE", "TRIAL", "ACTIVE", "INACTIVE", "CANCELLED")

_ACTIVE_STATUSES = ("TRIAL", "ACTIVE")
_GAME_CREATION_STATUSES = ("FREE", "TRIAL", "ACTIVE")

_MAX_TEAMS = {"FREE": 5, "BASIC": 10, "PREMIUM": 15}
_DEFAULT_MAX_TEAMS = 5

# (id, name, description, required tier)
_FEATURES = (
    ("create_game", "Create Games", "Create unlimited review games", "FREE"),
    ("custom_question_banks", "Custom Question Banks", "Create and manage your own question banks", "BASIC"),
    ("video_images", "Video & Images", "Add videos and images to questions", "BASIC"),
    ("custom_team_names", "Custom Team Names", "Customize team names for your games", "BASIC"),
    ("ai", "AI Question Generation", "Generate questions using AI", "PREMIUM"),
    ("community_banks", "Community Question Banks", "Access community-created question banks", "PREMIUM"),
    ("google_classroom", "Google Classroom", "Integrate with Google Classroom", "PREMIUM"),
    ("analytics", "Advanced Analytics", "Access detailed game analytics and insights", "PREMIUM"),
)


def get_tier(profile: dict[str, Any] | None) -> str:
    raw = (profile or {}).get("subscription_tier")
    if not raw:
        return "FREE"
    tier = str(raw).strip().upper()
    if tier in TIERS:
        return tier
    log.error("invalid_subscription_tier", tier=str(raw), profile_id=(profile or {}).get("id"))
    return "FREE"


def get_status(profile: dict[str, Any] | None) -> str:
    raw = (profile or {}).get("subscription_status")
    if not raw:
        return "INACTIVE"
    status = str(raw).strip().upper()
    if status in STATUSES:
        return status
    log.error("invalid_subscription_status", status=str(raw), profile_id=(profile or {}).get("id"))
    return "INACTIVE"


def has_active_subscription(profile: dict[str, Any] | None) -> bool:
    return get_status(profile) in _ACTIVE_STATUSES


def can_create_game(profile: dict[str, Any] | None) -> bool:
    if not profile:
        return False
    if get_status(profile) not in _GAME_CREATION_STATUSES:
        return False
    if get_tier(profile) == "FREE":
        return int(profile.get("games_created_count") or 0) < FREE_TIER_GAME_LIMIT
    return True


def get_max_teams(profile: dict[str, Any] | None) -> int:
    if not profile:
        return _DEFAULT_MAX_TEAMS
    tier = get_tier(profile)
    # Paid tiers fall back to FREE limits while the subscription is inactive.
    if tier != "FREE" and not has_active_subscription(profile):
        return _DEFAULT_MAX_TEAMS
    return _MAX_TEAMS.get(tier, _DEFAULT_MAX_TEAMS)


def _tier_at_least(profile: dict[str, Any] | None, required: str) -> bool:
    if not profile:
        return False
    if required == "FREE":
        return True
    tier = get_tier(profile)
    if TIERS.index(tier) < TIERS.index(required):
        return False
    return has_active_subscription(profile)


def can_access_feature(profile: dict[str, Any] | None, feature_id: str) -> bool:
    if feature_id == "create_game":
        return can_create_game(profile)
    for fid, _name, _desc, required in _FEATURES:
        if fid == feature_id:
            return _tier_at_least(profile, required)
    raise KeyError(f"unknown feature: {feature_id}")


def get_feature_list(profile: dict[str, Any] | None) -> list[dict[str, Any]]:
    return [
        {
            "id": fid,
            "name": name,
            "description": desc,
            "enabled": can_access_feature(profile, fid),
            "requiredTier": required,
        }
        for fid, name, desc, required in _FEATURES
    ]


# --- question bank access ---

def can_access_bank(profile: dict[str, Any] | None, bank: dict[str, Any] | None) -> bool:
    """
    Tier rules for using a bank in a game:

    - custom banks: owner only
    - prebuilt banks: all of them on BASIC/PREMIUM, FREE only for granted ids
    """
    if not profile or not bank:
        return False
    if bank.get("is_custom"):
        return bool(bank.get("owner_id")) and bank.get("owner_id") == profile.get("id")
    if get_tier(profile) in ("BASIC", "PREMIUM"):
        return True
    granted = profile.get("accessible_prebuilt_bank_ids") or []
    if not isinstance(granted, list):
        return False
    return bank.get("id") in [g for g in granted if isinstance(g, str)]


def can_read_bank(user_id: str, bank: dict[str, Any] | None) -> bool:
    """Public banks are readable by everyone; everything else by its owner."""
    if not bank:
        return False
    return bool(bank.get("is_public")) or (bool(bank.get("owner_id")) and bank.get("owner_id") == user_id)


def custom_bank_limit(profile: dict[str, Any] | None) -> int | None:
    tier = get_tier(profile)
    if tier == "PREMIUM":
        return None
    if tier == "FREE":
        return 0
    return int((profile or {}).get("custom_bank_limit") or DEFAULT_CUSTOM_BANK_LIMIT)


def remaining_custom_bank_slots(profile: dict[str, Any] | None) -> int | None:
    """0 when none remain, None when unlimited."""
    limit = custom_bank_limit(profile)
    if limit is None:
        return None
    return max(0, limit - int((profile or {}).get("custom_bank_count") or 0))
