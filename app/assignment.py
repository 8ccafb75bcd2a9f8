"""
Donor assignment state machine.

`transition` is the only function that writes `DonationRequest.status`. It
never mutates its input: the request is deep-copied, the event applied, and
the new request returned together with what happened, so callers can persist
the result with a version check and derive side effects from the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.errors import (
    AlreadyResponded,
    DonorNotFound,
    InvalidTransition,
    RequestClosed,
    SelfDonation,
)
from app.models import (
    BackupDonor,
    DonationRequest,
    DonorRole,
    PrimaryDonor,
    RequestStatus,
)

VERIFIABLE_STATUSES = frozenset(
    {
        RequestStatus.PRIMARY_ASSIGNED,
        RequestStatus.BACKUP_ASSIGNED,
        RequestStatus.PENDING_VERIFICATION,
    }
)


@dataclass(frozen=True)
class Claim:
    donor_id: str
    already_responded: bool = False


@dataclass(frozen=True)
class Cancel:
    donor_id: str


@dataclass(frozen=True)
class Timeout:
    donor_id: str  # The primary the sweep observed as stale


@dataclass(frozen=True)
class Arrive:
    donor_id: str


@dataclass(frozen=True)
class VerifyYes:
    pass


@dataclass(frozen=True)
class VerifyNo:
    pass


Event = Claim | Cancel | Timeout | Arrive | VerifyYes | VerifyNo


@dataclass
class Transition:
    request: DonationRequest
    changed: bool = True
    role: DonorRole | None = None
    promoted_donor_id: str | None = None
    removed_donor_id: str | None = None
    reopened: bool = False


def transition(
    request: DonationRequest, event: Event, now: datetime
) -> Transition:
    """Apply `event` to a copy of `request`."""
    updated = request.model_copy(deep=True)

    match event:
        case Claim(donor_id=donor_id, already_responded=already_responded):
            return _claim(updated, donor_id, already_responded, now)
        case Cancel(donor_id=donor_id):
            return _cancel(updated, donor_id, now)
        case Timeout(donor_id=donor_id):
            return _promote(updated, now, expected_primary=donor_id)
        case Arrive(donor_id=donor_id):
            return _arrive(updated, donor_id, now)
        case VerifyYes():
            return _verify(updated, RequestStatus.FULFILLED)
        case VerifyNo():
            return _verify(updated, RequestStatus.FAILED)
    raise TypeError(f"Unknown event {event!r}")


def assign(
    request: DonationRequest,
    donor_id: str,
    now: datetime,
    already_responded: bool = False,
) -> Transition:
    return transition(request, Claim(donor_id, already_responded), now)


def promote(
    request: DonationRequest,
    now: datetime,
    expected_primary: str | None = None,
) -> Transition:
    """
    Hand the primary slot to the earliest backup that has not been promoted
    yet, or reopen the request when none is left.

    When `expected_primary` is given and no longer holds the slot, the
    request was already handled and nothing changes.
    """
    return _promote(request.model_copy(deep=True), now, expected_primary)


def cancel(request: DonationRequest, donor_id: str, now: datetime) -> Transition:
    return transition(request, Cancel(donor_id), now)


def check_claim(
    request: DonationRequest, donor_id: str, already_responded: bool
) -> None:
    """Raise if `donor_id` may not claim `request`."""
    if request.status.is_terminal:
        raise RequestClosed()
    if already_responded or request.is_primary(donor_id) or request.backup_for(donor_id):
        raise AlreadyResponded()
    if request.requester_id is not None and request.requester_id == donor_id:
        raise SelfDonation()


def check_consistency(request: DonationRequest) -> None:
    """Raise `InvalidTransition` if status and donor fields disagree."""
    has_primary = request.primary_donor is not None
    if request.status == RequestStatus.OPEN and has_primary:
        raise InvalidTransition("Open request must not have a primary donor")
    if request.status in VERIFIABLE_STATUSES and not has_primary:
        raise InvalidTransition(f"Status {request.status} requires a primary donor")

    donors = [b.donor_id for b in request.backup_donors]
    if has_primary and request.primary_donor.donor_id in donors:
        primary_entry = request.backup_for(request.primary_donor.donor_id)
        # A promoted backup stays in the list, flagged.
        if primary_entry is None or not primary_entry.promoted:
            raise InvalidTransition("Donor is both primary and waiting backup")
    if len(donors) != len(set(donors)):
        raise InvalidTransition("Donor listed twice as backup")


def _claim(
    request: DonationRequest, donor_id: str, already_responded: bool, now: datetime
) -> Transition:
    check_claim(request, donor_id, already_responded)

    if request.primary_donor is None:
        request.primary_donor = PrimaryDonor(donor_id=donor_id, accepted_at=now)
        request.status = RequestStatus.PRIMARY_ASSIGNED
        return Transition(request, role=DonorRole.PRIMARY)

    request.backup_donors.append(BackupDonor(donor_id=donor_id, accepted_at=now))
    if request.status == RequestStatus.PRIMARY_ASSIGNED:
        request.status = RequestStatus.BACKUP_ASSIGNED
    return Transition(request, role=DonorRole.BACKUP)


def _promote(
    request: DonationRequest, now: datetime, expected_primary: str | None
) -> Transition:
    if request.status.is_terminal:
        raise RequestClosed()

    current = request.primary_donor
    if expected_primary is not None and (
        current is None or current.donor_id != expected_primary
    ):
        return Transition(request, changed=False)

    removed = current.donor_id if current else None
    candidate = next((b for b in request.backup_donors if not b.promoted), None)

    if candidate is None:
        request.primary_donor = None
        request.status = RequestStatus.OPEN
        return Transition(request, removed_donor_id=removed, reopened=True)

    candidate.promoted = True
    request.primary_donor = PrimaryDonor(donor_id=candidate.donor_id, accepted_at=now)
    request.status = RequestStatus.PRIMARY_ASSIGNED
    return Transition(
        request,
        role=DonorRole.PRIMARY,
        promoted_donor_id=candidate.donor_id,
        removed_donor_id=removed,
    )


def _cancel(request: DonationRequest, donor_id: str, now: datetime) -> Transition:
    if request.status.is_terminal:
        raise RequestClosed()

    if request.is_primary(donor_id):
        return _promote(request, now, expected_primary=donor_id)

    backup = request.backup_for(donor_id)
    if backup is None or backup.promoted:
        raise DonorNotFound()

    request.backup_donors = [
        b for b in request.backup_donors if b.donor_id != donor_id
    ]
    return Transition(request, role=DonorRole.BACKUP, removed_donor_id=donor_id)


def _arrive(request: DonationRequest, donor_id: str, now: datetime) -> Transition:
    if request.status.is_terminal:
        raise RequestClosed()
    if not request.is_primary(donor_id):
        raise DonorNotFound("Only the primary donor can confirm arrival")
    if request.primary_donor.arrived:
        return Transition(request, changed=False)
    request.primary_donor.arrived = True
    request.primary_donor.confirmed_at = now
    return Transition(request, role=DonorRole.PRIMARY)


def _verify(request: DonationRequest, outcome: RequestStatus) -> Transition:
    if request.status.is_terminal:
        raise RequestClosed()
    if request.status not in VERIFIABLE_STATUSES or request.primary_donor is None:
        raise InvalidTransition("Request has no donor to verify")
    request.status = outcome
    return Transition(request)
