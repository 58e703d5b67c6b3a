from __future__ import annotations

from typing import Any, Optional

PLAN_TYPE_CANDIDATE = "candidate"
PLAN_TYPE_HIGHLIGHT = "highlight"
PLAN_TYPE_CAROUSEL = "carousel"
PLAN_TYPES = (PLAN_TYPE_CANDIDATE, PLAN_TYPE_HIGHLIGHT, PLAN_TYPE_CAROUSEL)

DEFAULT_VALIDITY_DAYS = 30

_PLAN_DISPLAY_NAMES = {
    "gold_plan": "Gold",
    "platinum_plan": "Platinum",
    "basic_plan": "Basic",
}

# Entitlement fields on users/{uid}, one (id, expiry) pair per plan family.
ENTITLEMENT_FIELDS = {
    PLAN_TYPE_CANDIDATE: ("subscriptionPlanId", "subscriptionExpiresAt"),
    PLAN_TYPE_HIGHLIGHT: ("highlightPlanId", "highlightPlanExpiresAt"),
    PLAN_TYPE_CAROUSEL: ("carouselPlanId", "carouselPlanExpiresAt"),
}


def derive_plan_type(plan_id: Optional[str]) -> str:
    value = str(plan_id or "").lower()
    if "highlight" in value:
        return PLAN_TYPE_HIGHLIGHT
    if "carousel" in value:
        return PLAN_TYPE_CAROUSEL
    return PLAN_TYPE_CANDIDATE


def is_platinum(plan_id: Optional[str]) -> bool:
    return "platinum" in str(plan_id or "").lower()


def plan_display_name(plan_id: Optional[str]) -> str:
    return _PLAN_DISPLAY_NAMES.get(str(plan_id or ""), "Premium")


def parse_validity_days(value: Any, default: int = DEFAULT_VALIDITY_DAYS) -> int:
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    text = str(value).strip()
    if not text:
        return default
    try:
        days = int(text)
    except ValueError:
        return default
    return days if days > 0 else default


def entitlement_patch(plan_type: str, plan_id: str, expires_at) -> dict:
    """Fields to merge into the user record for one plan family only."""
    id_field, expiry_field = ENTITLEMENT_FIELDS[plan_type]
    patch = {id_field: plan_id, expiry_field: expires_at}
    if plan_type == PLAN_TYPE_CANDIDATE:
        patch["premium"] = True
    return patch


def candidate_downgrade_patch() -> dict:
    id_field, expiry_field = ENTITLEMENT_FIELDS[PLAN_TYPE_CANDIDATE]
    return {"premium": False, id_field: None, expiry_field: None}
