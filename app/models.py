"""
Domain models for blood donation requests, donor responses, rewards and offers.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

REQUEST_TTL = timedelta(days=7)


def new_id() -> str:
    return str(uuid4())


class RequestStatus(StrEnum):
    OPEN = "open"  # No primary donor, visible to matching
    PRIMARY_ASSIGNED = "primary_assigned"
    BACKUP_ASSIGNED = "backup_assigned"  # Primary plus at least one backup joined
    PENDING_VERIFICATION = "pending_verification"
    FULFILLED = "fulfilled"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {RequestStatus.FULFILLED, RequestStatus.FAILED, RequestStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset(
    {
        RequestStatus.OPEN,
        RequestStatus.PRIMARY_ASSIGNED,
        RequestStatus.BACKUP_ASSIGNED,
    }
)


class DonorRole(StrEnum):
    PRIMARY = "primary"
    BACKUP = "backup"


class ResponseStatus(StrEnum):
    ACTIVE = "active"
    PROMOTED = "promoted"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RewardCategory(StrEnum):
    DONATION_COMPLETED = "donation_completed"
    REQUEST_FULFILLED = "request_fulfilled"
    BACKUP_ARRIVAL = "backup_arrival"
    OFFER_CONFIRMED = "offer_confirmed"
    OFFER_ACKNOWLEDGED = "offer_acknowledged"


class GeoPoint(BaseModel):
    lat: float
    lng: float


class PrimaryDonor(BaseModel):
    donor_id: str
    accepted_at: datetime
    confirmed_at: datetime | None = None
    arrived: bool = False


class BackupDonor(BaseModel):
    donor_id: str
    accepted_at: datetime
    promoted: bool = False
    reached_hospital: bool = False
    gps_verified: bool = False


class DonationRequest(BaseModel):
    """A patient's request for blood and its current donor assignment."""

    id: str = Field(default_factory=new_id)
    requester_id: str | None = None
    requester_uid: str | None = None  # Legacy requests only carry this
    name: str
    age: int | None = None
    phone: str
    blood_group: str
    hospital: str
    description: str | None = None
    units: int = 1
    location: GeoPoint | None = None
    status: RequestStatus = RequestStatus.OPEN
    primary_donor: PrimaryDonor | None = None
    backup_donors: list[BackupDonor] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime | None = None
    version: int = 0
    # Carried in the emailed verify links, never serialized.
    verification_token: str | None = Field(default=None, exclude=True)

    def model_post_init(self, __context: Any) -> None:
        if self.expires_at is None:
            self.expires_at = self.created_at + REQUEST_TTL

    def backup_for(self, donor_id: str) -> BackupDonor | None:
        for backup in self.backup_donors:
            if backup.donor_id == donor_id:
                return backup
        return None

    def is_primary(self, donor_id: str) -> bool:
        return (
            self.primary_donor is not None
            and self.primary_donor.donor_id == donor_id
        )


class DonorResponse(BaseModel):
    """A donor's role on one request. Kept after the request is deleted."""

    id: str = Field(default_factory=new_id)
    request_id: str
    donor_id: str
    role: DonorRole
    status: ResponseStatus = ResponseStatus.ACTIVE
    reward_points: int = 0
    hospital: str | None = None  # Snapshot
    patient_name: str | None = None  # Snapshot
    updated_at: datetime


class RewardEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    request_id: str | None = None
    category: RewardCategory
    coins: int = 0
    leaderboard_points: int = 0
    patient_name: str | None = None
    hospital: str | None = None
    created_at: datetime


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    uid: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    age: int | None = None
    blood_group: str | None = None
    available: bool = False
    location: GeoPoint | None = None
    coins: int = 0
    leaderboard_points: int = 0
    donations_count: int = 0
    updated_at: datetime | None = None


class DonorSnapshot(BaseModel):
    """Donor contact details captured when an offer is made."""

    name: str | None = None
    phone: str | None = None
    email: str | None = None
    age: int | None = None

    @classmethod
    def from_user(cls, user: User) -> DonorSnapshot:
        return cls(name=user.name, phone=user.phone, email=user.email, age=user.age)

    def merged_with(self, live: User | None) -> DonorSnapshot:
        """Prefer the live user record, fall back to the captured snapshot."""
        if live is None:
            return self.model_copy()
        return DonorSnapshot(
            name=live.name or self.name,
            phone=live.phone or self.phone,
            email=live.email or self.email,
            age=live.age if live.age is not None else self.age,
        )


class OfferStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Offer(BaseModel):
    """An out-of-band contact asking a prospective donor to commit."""

    id: str = Field(default_factory=new_id)
    request_id: str
    donor_user_id: str | None = None
    donor_snapshot: DonorSnapshot = Field(default_factory=DonorSnapshot)
    token: str
    units: int = 1
    response: str | None = None  # "yes" / "no"
    responded_at: datetime | None = None
    status: OfferStatus = OfferStatus.PENDING
    created_at: datetime
    follow_up_at: datetime
    follow_up_sent: bool = False
    follow_up_sent_at: datetime | None = None
    follow_up_response: str | None = None
    follow_up_responded_at: datetime | None = None


class InterestConfirmation(BaseModel):
    token: str
    request_id: str
    donor_id: str
    created_at: datetime
    consumed: bool = False


class Notification(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str | None = None
    email: str | None = None
    template: str
    title: str
    body: str
    payload: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime


# HTTP payloads


class CreateUserPayload(BaseModel):
    uid: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    age: int | None = None
    blood_group: str | None = None
    available: bool = False
    location: GeoPoint | None = None


class CreateRequestPayload(BaseModel):
    name: str | None = None
    age: int | None = None
    phone: str | None = None
    blood_group: str | None = None
    hospital: str | None = None
    description: str | None = None
    units: int = 1
    location: GeoPoint | None = None


class CreateOfferPayload(BaseModel):
    request_id: str
    units: int = 1
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    age: int | None = None


class MarkReadPayload(BaseModel):
    ids: list[str] = Field(default_factory=list)
    mark_all: bool = False


class DonationHistoryItem(BaseModel):
    response: DonorResponse
    request: DonationRequest | None = None  # None once the request is deleted


class NearbyRequest(BaseModel):
    request: DonationRequest
    distance_km: float | None = None


class NearbyDonor(BaseModel):
    id: str
    name: str | None = None
    blood_group: str | None = None
    distance_km: float | None = None
    location: GeoPoint | None = None
    coins: int = 0


class AvailabilityPayload(BaseModel):
    available: bool
    location: GeoPoint | None = None


class LocationPayload(BaseModel):
    lat: float | None = None
    lng: float | None = None


class GeocodeResult(BaseModel):
    request_id: str
    ok: bool
    reason: str | None = None
    location: GeoPoint | None = None
