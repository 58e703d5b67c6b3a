"""Plan-specific content provisioned after a subscription is activated.

Candidate ``platinum`` plans get an exclusive highlight placement plus an
announcement in the ward feed. ``highlight`` plans create a rotating
placement, or extend the candidate's existing one. Carousel and other
candidate plans need nothing beyond the entitlement update.

Jobs may be retried by the queue, so every write here is keyed on the
payment id and safe to repeat.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from firebase_admin import firestore

from .config import Settings
from .plans import (
    PLAN_TYPE_CANDIDATE,
    PLAN_TYPE_HIGHLIGHT,
    is_platinum,
)

logger = logging.getLogger("billing.provisioning")

HIGHLIGHTS_COLLECTION = "highlights"
FEED_COLLECTION = "pushFeed"

PACKAGE_PLATINUM = "platinum"
PACKAGE_HIGHLIGHT = "highlight"
PLATINUM_PRIORITY = 10
HIGHLIGHT_PRIORITY = 5


@dataclass(frozen=True)
class ProvisioningJob:
    user_id: str
    plan_id: str
    plan_type: str
    validity_days: int
    payment_id: str
    subscription_id: str
    activated_at: str
    election_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ProvisioningJob":
        return cls(
            user_id=str(raw["user_id"]),
            plan_id=str(raw["plan_id"]),
            plan_type=str(raw["plan_type"]),
            validity_days=int(raw["validity_days"]),
            payment_id=str(raw["payment_id"]),
            subscription_id=str(raw["subscription_id"]),
            activated_at=str(raw["activated_at"]),
            election_type=raw.get("election_type"),
        )


@dataclass(frozen=True)
class ProvisioningResult:
    status: str  # provisioned | extended | skipped
    detail: Optional[str] = None
    highlight_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CandidateLink:
    candidate_id: str
    state_id: Optional[str]
    district_id: str
    body_id: str
    ward_id: str
    name: Optional[str] = None
    photo: Optional[str] = None

    @property
    def location_key(self) -> str:
        return f"{self.district_id}/{self.body_id}/{self.ward_id}"

    def location_fields(self) -> Dict[str, Any]:
        return {
            "stateId": self.state_id,
            "districtId": self.district_id,
            "bodyId": self.body_id,
            "wardId": self.ward_id,
            "locationKey": self.location_key,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def resolve_candidate(db, user_id: str) -> Optional[CandidateLink]:
    snapshot = db.collection("users").document(user_id).get()
    if not snapshot.exists:
        return None
    user = snapshot.to_dict() or {}
    candidate_id = str(user.get("candidateId") or "").strip()
    location = user.get("location") if isinstance(user.get("location"), dict) else {}
    district_id = str(location.get("districtId") or "").strip()
    body_id = str(location.get("bodyId") or "").strip()
    ward_id = str(location.get("wardId") or "").strip()
    if not candidate_id or not (district_id and body_id and ward_id):
        return None
    state_id = str(location.get("stateId") or "").strip() or None

    name = user.get("name")
    photo = user.get("photo")
    if state_id:
        candidate_snapshot = (
            db.collection("states").document(state_id)
            .collection("districts").document(district_id)
            .collection("bodies").document(body_id)
            .collection("wards").document(ward_id)
            .collection("candidates").document(candidate_id)
            .get()
        )
        if candidate_snapshot.exists:
            candidate = candidate_snapshot.to_dict() or {}
            name = candidate.get("name") or name
            photo = candidate.get("photo") or photo
    return CandidateLink(
        candidate_id=candidate_id,
        state_id=state_id,
        district_id=district_id,
        body_id=body_id,
        ward_id=ward_id,
        name=name,
        photo=photo,
    )


def _write_feed_entry(
    db,
    settings: Settings,
    *,
    entry_id: str,
    entry_type: str,
    link: CandidateLink,
    job: ProvisioningJob,
    title: str,
    message: str,
    now: datetime,
) -> None:
    db.collection(FEED_COLLECTION).document(entry_id).set(
        {
            "id": entry_id,
            "type": entry_type,
            "candidateId": link.candidate_id,
            "candidateName": link.name,
            "userId": job.user_id,
            **link.location_fields(),
            "title": title,
            "message": message,
            "active": True,
            "createdAt": now,
            "expiresAt": now + timedelta(hours=settings.feed_entry_ttl_hours),
        }
    )


def provision_platinum(db, settings: Settings, job: ProvisioningJob, link: CandidateLink, now: datetime) -> ProvisioningResult:
    highlight_id = f"{PACKAGE_PLATINUM}_{job.payment_id}"
    expires_at = now + timedelta(days=job.validity_days)
    ref = db.collection(HIGHLIGHTS_COLLECTION).document(highlight_id)
    existing = ref.get()
    if existing.exists:
        data = existing.to_dict() or {}
        return ProvisioningResult(
            status="skipped",
            detail="already_provisioned",
            highlight_id=highlight_id,
            expires_at=_as_utc(data.get("endDate")),
        )
    ref.set(
        {
            "id": highlight_id,
            "package": PACKAGE_PLATINUM,
            "candidateId": link.candidate_id,
            "candidateName": link.name,
            "imageUrl": link.photo,
            "userId": job.user_id,
            **link.location_fields(),
            "placement": ["top_banner"],
            "priority": PLATINUM_PRIORITY,
            "exclusive": True,
            "rotation": False,
            "active": True,
            "startDate": now,
            "endDate": expires_at,
            "appliedPayments": [job.payment_id],
            "createdAt": now,
            "updatedAt": now,
        }
    )
    _write_feed_entry(
        db,
        settings,
        entry_id=f"{PACKAGE_PLATINUM}_{job.payment_id}",
        entry_type="platinum_announcement",
        link=link,
        job=job,
        title="Platinum candidate",
        message=f"{link.name or 'A candidate'} is now a Platinum candidate in your ward.",
        now=now,
    )
    logger.info(
        "Platinum highlight %s created for candidate %s (%s)",
        highlight_id,
        link.candidate_id,
        link.location_key,
    )
    return ProvisioningResult(status="provisioned", highlight_id=highlight_id, expires_at=expires_at)


def _find_highlight(db, link: CandidateLink) -> Optional[Any]:
    matches = (
        db.collection(HIGHLIGHTS_COLLECTION)
        .where("candidateId", "==", link.candidate_id)
        .where("wardId", "==", link.ward_id)
        .where("package", "==", PACKAGE_HIGHLIGHT)
        .limit(1)
        .get()
    )
    return matches[0] if matches else None


def renewed_expiry(current_expiry: Optional[datetime], now: datetime, validity_days: int) -> datetime:
    """Additive renewal: extends from whichever is later, never shortens."""
    base = now if current_expiry is None or current_expiry < now else current_expiry
    return base + timedelta(days=validity_days)


@firestore.transactional
def _extend_highlight(transaction, ref, payment_id: str, validity_days: int, now: datetime) -> Tuple[bool, Optional[datetime]]:
    # Read and write in one transaction so overlapping renewals both count.
    data = ref.get(transaction=transaction).to_dict() or {}
    current_expiry = _as_utc(data.get("endDate"))
    if payment_id in (data.get("appliedPayments") or []):
        return False, current_expiry
    expires_at = renewed_expiry(current_expiry, now, validity_days)
    transaction.update(
        ref,
        {
            "endDate": expires_at,
            "active": True,
            "exclusive": False,
            "rotation": True,
            "appliedPayments": firestore.ArrayUnion([payment_id]),
            "updatedAt": now,
        },
    )
    return True, expires_at


def provision_highlight(db, settings: Settings, job: ProvisioningJob, link: CandidateLink, now: datetime) -> ProvisioningResult:
    existing = _find_highlight(db, link)
    if existing is not None:
        extended, expires_at = _extend_highlight(
            db.transaction(), existing.reference, job.payment_id, job.validity_days, now
        )
        if not extended:
            return ProvisioningResult(
                status="skipped",
                detail="already_applied",
                highlight_id=existing.id,
                expires_at=expires_at,
            )
        logger.info(
            "Highlight %s extended to %s for candidate %s",
            existing.id,
            expires_at.isoformat(),
            link.candidate_id,
        )
        return ProvisioningResult(status="extended", highlight_id=existing.id, expires_at=expires_at)

    highlight_id = f"{PACKAGE_HIGHLIGHT}_{job.payment_id}"
    expires_at = now + timedelta(days=job.validity_days)
    db.collection(HIGHLIGHTS_COLLECTION).document(highlight_id).set(
        {
            "id": highlight_id,
            "package": PACKAGE_HIGHLIGHT,
            "candidateId": link.candidate_id,
            "candidateName": link.name,
            "imageUrl": link.photo,
            "userId": job.user_id,
            **link.location_fields(),
            "placement": ["carousel"],
            "priority": HIGHLIGHT_PRIORITY,
            "exclusive": False,
            "rotation": True,
            "active": True,
            "startDate": now,
            "endDate": expires_at,
            "appliedPayments": [job.payment_id],
            "createdAt": now,
            "updatedAt": now,
        }
    )
    _write_feed_entry(
        db,
        settings,
        entry_id=f"{PACKAGE_HIGHLIGHT}_{job.payment_id}",
        entry_type="highlight_welcome",
        link=link,
        job=job,
        title="New highlight",
        message=f"Check out {link.name or 'a candidate'} in your ward.",
        now=now,
    )
    logger.info("Highlight %s created for candidate %s", highlight_id, link.candidate_id)
    return ProvisioningResult(status="provisioned", highlight_id=highlight_id, expires_at=expires_at)


def run_provisioning(db, settings: Settings, job: ProvisioningJob, now: Optional[datetime] = None) -> ProvisioningResult:
    """Route an activated plan to its provisioning branch. Raises on write errors."""
    now = now or _now()
    platinum = job.plan_type == PLAN_TYPE_CANDIDATE and is_platinum(job.plan_id)
    if not platinum and job.plan_type != PLAN_TYPE_HIGHLIGHT:
        return ProvisioningResult(status="skipped", detail="no_provisioning_for_plan")

    link = resolve_candidate(db, job.user_id)
    if link is None:
        logger.info(
            "Skipping %s provisioning for user %s: no linked candidate or incomplete location",
            job.plan_id,
            job.user_id,
        )
        return ProvisioningResult(status="skipped", detail="no_candidate_link")

    if platinum:
        return provision_platinum(db, settings, job, link, now)
    return provision_highlight(db, settings, job, link, now)
