"""
Request lifecycle orchestration.

Each mutating operation holds the request's lock while it reads the request,
computes the next state with `app.assignment`, writes the request (version
checked) and then the donor responses. Notifications are queued during the
locked section and sent after it, so a failed send never undoes a transition.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app import config
from app.assignment import (
    Arrive,
    Transition,
    VerifyNo,
    VerifyYes,
    assign,
    cancel,
    check_claim,
    check_consistency,
    transition,
)
from app.database import Database
from app.errors import (
    DonorNotFound,
    Forbidden,
    InvalidLink,
    InvalidResponse,
    RequestClosed,
    RequestNotFound,
    UserNotFound,
    ValidationFailed,
)
from app.geocoding import Geocoder
from app.models import (
    ACTIVE_STATUSES,
    CreateRequestPayload,
    DonationHistoryItem,
    DonationRequest,
    DonorResponse,
    DonorRole,
    GeocodeResult,
    InterestConfirmation,
    NearbyRequest,
    RequestStatus,
    ResponseStatus,
    RewardCategory,
    RewardEntry,
    User,
)
from app.notifier import NotificationQueue, Notifier
from app.rewards import BACKUP_REWARD, PRIMARY_REWARD, REQUESTER_REWARD, RewardLedger

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

REQUIRED_REQUEST_FIELDS = ("name", "phone", "blood_group", "hospital")
WITHDRAWN_STATUSES = frozenset({ResponseStatus.CANCELLED, ResponseStatus.FAILED})


def utcnow() -> datetime:
    return datetime.now(UTC)


def persist(db: Database, before: DonationRequest, result: Transition) -> DonationRequest:
    """Write a computed transition, refusing inconsistent or stale results."""
    if not result.changed:
        return before
    check_consistency(result.request)
    return db.requests.replace(result.request, expected_version=before.version)


def window_hours() -> int:
    return int(config.RESPONSE_WINDOW.total_seconds() // 3600)


def queue_promotion_notices(
    db: Database,
    queue: NotificationQueue,
    request: DonationRequest,
    result: Transition,
    now: datetime,
) -> None:
    """Record the promotion on the donor responses and tell everyone involved."""
    requester = requester_of(db, request)
    if result.promoted_donor_id is not None:
        db.responses.update(
            request.id,
            result.promoted_donor_id,
            now,
            role=DonorRole.PRIMARY,
            status=ResponseStatus.PROMOTED,
        )
        promoted = db.users.get(result.promoted_donor_id)
        queue.add(
            promoted,
            "promoted",
            {"hospital": request.hospital, "window_hours": window_hours()},
        )
        queue.add(
            requester,
            "primary_changed",
            {"donor": promoted.name if promoted else "A backup donor"},
        )
    elif result.reopened:
        queue.add(requester, "request_reopened", {"hospital": request.hospital})


def requester_of(db: Database, request: DonationRequest) -> User | None:
    """The requesting user, falling back to the legacy uid."""
    if request.requester_id:
        user = db.users.get(request.requester_id)
        if user is not None:
            return user
    if request.requester_uid:
        return db.users.get_by_uid(request.requester_uid)
    return None


@dataclass
class ClaimResult:
    role: DonorRole
    message: str
    request: DonationRequest


@dataclass
class VerificationResult:
    status: RequestStatus
    rewards: list[RewardEntry] = field(default_factory=list)


class LifecycleController:
    def __init__(
        self,
        db: Database,
        notifier: Notifier,
        ledger: RewardLedger | None = None,
        geocoder: Geocoder | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.ledger = ledger or RewardLedger(db)
        self.geocoder = geocoder
        self.clock = clock or utcnow

    def _load(self, request_id: str) -> DonationRequest:
        request = self.db.requests.get(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return request

    def _user(self, user_id: str) -> User:
        user = self.db.users.get(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    async def create_request(
        self, payload: CreateRequestPayload, requester_ref: str | None = None
    ) -> DonationRequest:
        missing = [f for f in REQUIRED_REQUEST_FIELDS if not getattr(payload, f)]
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(missing)}")

        requester = self.db.users.resolve(requester_ref)
        location = payload.location
        if location is None and self.geocoder is not None and config.GEOCODING_ENABLED:
            location = await self.geocoder.geocode(payload.hospital)

        request = DonationRequest(
            requester_id=requester.id if requester else None,
            requester_uid=requester.uid if requester else requester_ref,
            name=payload.name,
            age=payload.age,
            phone=payload.phone,
            blood_group=payload.blood_group,
            hospital=payload.hospital,
            description=payload.description,
            units=max(payload.units, 1),
            location=location,
            created_at=self.clock(),
        )
        self.db.requests.create(request)
        logger.info("Created request %s at %s", request.id, request.hospital)

        if location is not None:
            queue = NotificationQueue()
            nearby = self.db.users.find_near(
                location.lat, location.lng, config.NEARBY_RADIUS_KM, available_only=True
            )
            for user, _ in nearby:
                if requester is not None and user.id == requester.id:
                    continue
                queue.add(
                    user,
                    "donor_needed",
                    {
                        "patient": request.name,
                        "blood_group": request.blood_group,
                        "hospital": request.hospital,
                        "units": request.units,
                        "request_id": request.id,
                    },
                )
            sent = await queue.dispatch(self.notifier)
            logger.info("Notified %d nearby donors for request %s", sent, request.id)
        return request

    async def claim(self, request_id: str, donor_id: str) -> ClaimResult:
        donor = self._user(donor_id)
        queue = NotificationQueue()

        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self._load(request_id)
            now = self.clock()
            result = assign(
                request,
                donor_id,
                now,
                already_responded=self.db.responses.exists(request_id, donor_id),
            )
            stored = persist(self.db, request, result)
            self.db.responses.create(
                DonorResponse(
                    request_id=request_id,
                    donor_id=donor_id,
                    role=result.role,
                    hospital=stored.hospital,
                    patient_name=stored.name,
                    updated_at=now,
                )
            )

            if result.role == DonorRole.PRIMARY:
                message = (
                    "You are the Primary Donor! Please arrive within "
                    f"{window_hours()} hours."
                )
                queue.add(
                    donor,
                    "assigned_primary",
                    {"hospital": stored.hospital, "window_hours": window_hours()},
                )
            else:
                message = "You are a Backup Donor. Standby!"
                queue.add(donor, "assigned_backup", {"hospital": stored.hospital})
            queue.add(
                requester_of(self.db, stored),
                "donor_found",
                {"donor": donor.name or "A donor", "role": result.role.value},
            )

        logger.info("Donor %s claimed request %s as %s", donor_id, request_id, result.role)
        await queue.dispatch(self.notifier)
        return ClaimResult(role=result.role, message=message, request=stored)

    async def cancel(self, request_id: str, donor_id: str) -> str:
        queue = NotificationQueue()

        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self._load(request_id)
            now = self.clock()
            result = cancel(request, donor_id, now)
            stored = persist(self.db, request, result)
            self.db.responses.set_status(
                request_id, donor_id, ResponseStatus.CANCELLED, now
            )
            queue_promotion_notices(self.db, queue, stored, result, now)

        await queue.dispatch(self.notifier)
        if result.promoted_donor_id is not None:
            logger.info(
                "Primary %s cancelled request %s; promoted %s",
                donor_id,
                request_id,
                result.promoted_donor_id,
            )
            return "Donation cancelled. Backup donor promoted to primary."
        if result.reopened:
            logger.info("Primary %s cancelled request %s; reopened", donor_id, request_id)
            return "Donation cancelled. Request is now open for new donors."
        return "Donation cancelled."

    async def confirm_arrival(self, request_id: str, donor_id: str) -> DonationRequest:
        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self._load(request_id)
            result = transition(request, Arrive(donor_id), self.clock())
            return persist(self.db, request, result)

    async def complete(self, request_id: str, donor_id: str) -> None:
        """
        Mark the donor's part as done and ask the requester to verify it.

        The request status is left alone: completion only counts once the
        requester confirms it through `verify_donation`.
        """
        queue = NotificationQueue()

        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self._load(request_id)
            if request.status.is_terminal:
                raise RequestClosed()
            response = self.db.responses.find(request_id, donor_id)
            if response is None or response.status not in (
                ResponseStatus.ACTIVE,
                ResponseStatus.PROMOTED,
            ):
                raise DonorNotFound()
            self.db.responses.set_status(
                request_id, donor_id, ResponseStatus.COMPLETED, self.clock()
            )

            token = request.verification_token
            if token is None:
                token = secrets.token_urlsafe(24)
                request = self.db.requests.replace(
                    request.model_copy(update={"verification_token": token}),
                    expected_version=request.version,
                )

            donor = self.db.users.get(donor_id)
            verify_url = f"{config.SERVER_BASE}/requests/{request_id}/verify"
            queue.add(
                requester_of(self.db, request),
                "verify_donation",
                {
                    "donor": (donor.name if donor else None) or "A donor",
                    "hospital": request.hospital,
                    "yes_url": f"{verify_url}?response=yes&token={token}",
                    "no_url": f"{verify_url}?response=no&token={token}",
                },
            )

        sent = await queue.dispatch(self.notifier)
        if not sent:
            logger.warning("No requester to verify donation for request %s", request_id)

    def _check_verifier(
        self, request: DonationRequest, token: str | None, user_id: str | None
    ) -> None:
        """Only the emailed link or the signed-in requester may verify."""
        if token is not None and request.verification_token is not None:
            if secrets.compare_digest(token, request.verification_token):
                return
        if user_id is not None:
            requester = requester_of(self.db, request)
            if requester is not None and requester.id == user_id:
                return
        raise Forbidden("Only the requester can verify this donation")

    async def verify_donation(
        self,
        request_id: str,
        response: str,
        token: str | None = None,
        user_id: str | None = None,
    ) -> VerificationResult:
        if response not in ("yes", "no"):
            raise InvalidResponse()
        queue = NotificationQueue()

        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self._load(request_id)
            self._check_verifier(request, token, user_id)
            now = self.clock()

            if response == "no":
                stored = persist(self.db, request, transition(request, VerifyNo(), now))
                queue.add(
                    self.db.users.get(stored.primary_donor.donor_id),
                    "verification_failed",
                    {"hospital": stored.hospital},
                )
                verdict = VerificationResult(status=stored.status)
            else:
                stored = persist(self.db, request, transition(request, VerifyYes(), now))
                rewards = self._distribute_rewards(stored, queue, now)
                self.db.responses.snapshot_request(stored, now)
                self.db.requests.delete(request_id)
                verdict = VerificationResult(status=stored.status, rewards=rewards)

        if verdict.status == RequestStatus.FULFILLED:
            self.db.locks.forget(request_id)
            logger.info(
                "Request %s fulfilled; %d rewards granted", request_id, len(verdict.rewards)
            )
        else:
            logger.info("Request %s failed verification", request_id)
        await queue.dispatch(self.notifier)
        return verdict

    def _distribute_rewards(
        self, request: DonationRequest, queue: NotificationQueue, now: datetime
    ) -> list[RewardEntry]:
        granted = []

        def grant(
            user: User,
            reward: tuple[int, int],
            category: RewardCategory,
            counts_donation: bool = False,
        ) -> None:
            coins, points = reward
            granted.append(
                self.ledger.grant(
                    user.id,
                    request.id,
                    coins,
                    points,
                    category,
                    now,
                    patient_name=request.name,
                    hospital=request.hospital,
                    counts_donation=counts_donation,
                )
            )

        primary_id = request.primary_donor.donor_id
        primary = self.db.users.get(primary_id)
        if primary is not None:
            grant(primary, PRIMARY_REWARD, RewardCategory.DONATION_COMPLETED, True)
            self.db.responses.update(
                request.id, primary_id, now, reward_points=PRIMARY_REWARD[1]
            )
            queue.add(
                primary,
                "donation_verified",
                {
                    "hospital": request.hospital,
                    "coins": PRIMARY_REWARD[0],
                    "points": PRIMARY_REWARD[1],
                },
            )

        requester = requester_of(self.db, request)
        if requester is not None:
            grant(requester, REQUESTER_REWARD, RewardCategory.REQUEST_FULFILLED)
            queue.add(
                requester,
                "request_fulfilled",
                {"coins": REQUESTER_REWARD[0], "points": REQUESTER_REWARD[1]},
            )

        for backup in request.backup_donors:
            if backup.donor_id == primary_id:
                continue
            # Donors who withdrew or timed out after a promotion earn nothing.
            response = self.db.responses.find(request.id, backup.donor_id)
            if response is None or response.status in WITHDRAWN_STATUSES:
                continue
            user = self.db.users.get(backup.donor_id)
            if user is None:
                continue
            grant(user, BACKUP_REWARD, RewardCategory.BACKUP_ARRIVAL)
            self.db.responses.update(
                request.id, backup.donor_id, now, reward_points=BACKUP_REWARD[1]
            )
            queue.add(
                user,
                "backup_thanks",
                {
                    "hospital": request.hospital,
                    "coins": BACKUP_REWARD[0],
                    "points": BACKUP_REWARD[1],
                },
            )
        return granted

    async def close_request(self, request_id: str, user_id: str) -> None:
        """Requester removes a request they no longer need (e.g. blood found elsewhere)."""
        user = self._user(user_id)

        lock = await self.db.locks.get(request_id)
        async with lock:
            request = self._load(request_id)
            owns = (request.requester_id is not None and request.requester_id == user.id) or (
                request.requester_uid is not None and request.requester_uid == user.uid
            )
            if not owns:
                raise Forbidden("Only the requester can close this request")
            if request.status.is_terminal:
                raise RequestClosed()

            now = self.clock()
            self.db.responses.snapshot_request(request, now)
            for response in self.db.responses.list_for_request(request_id):
                if response.status in (ResponseStatus.ACTIVE, ResponseStatus.PROMOTED):
                    self.db.responses.set_status(
                        request_id, response.donor_id, ResponseStatus.CANCELLED, now
                    )
            self.db.requests.delete(request_id)

        self.db.locks.forget(request_id)
        logger.info("Request %s closed by requester %s", request_id, user.id)

    async def register_interest(
        self, request_id: str, donor_id: str
    ) -> InterestConfirmation:
        """First half of the two-step claim: email the donor a confirmation link."""
        donor = self._user(donor_id)
        request = self._load(request_id)
        check_claim(request, donor_id, self.db.responses.exists(request_id, donor_id))
        if not donor.email:
            raise ValidationFailed("Email required to confirm donation.")

        confirmation = InterestConfirmation(
            token=secrets.token_urlsafe(24),
            request_id=request_id,
            donor_id=donor_id,
            created_at=self.clock(),
        )
        self.db.interests.put(confirmation.token, confirmation)

        confirm_url = f"{config.SERVER_BASE}/interest/confirm?token={confirmation.token}"
        await self.notifier.notify(
            donor,
            "confirm_interest",
            {
                "hospital": request.hospital,
                "yes_url": f"{confirm_url}&response=yes",
                "no_url": f"{confirm_url}&response=no",
            },
        )
        return confirmation

    async def confirm_interest(self, token: str, response: str) -> ClaimResult | None:
        """Second half: a `yes` runs the regular claim, anything else declines."""
        confirmation = self.db.interests.get(token)
        if confirmation is None or confirmation.consumed:
            raise InvalidLink()
        confirmation.consumed = True

        if response != "yes":
            logger.info(
                "Donor %s declined request %s", confirmation.donor_id, confirmation.request_id
            )
            return None
        return await self.claim(confirmation.request_id, confirmation.donor_id)

    async def geocode_missing(self, limit: int = 50) -> list[GeocodeResult]:
        """Backfill coordinates for open requests created without a location."""
        pending = [
            r
            for r in self.db.requests.all()
            if r.status == RequestStatus.OPEN and r.location is None
        ][:limit]

        results = []
        for index, request in enumerate(pending):
            if index and config.GEOCODE_BACKFILL_DELAY_SECONDS:
                # Nominatim allows about one lookup per second.
                await asyncio.sleep(config.GEOCODE_BACKFILL_DELAY_SECONDS)
            if self.geocoder is None:
                results.append(
                    GeocodeResult(request_id=request.id, ok=False, reason="no geocoder")
                )
                continue
            location = await self.geocoder.geocode(request.hospital)
            if location is None:
                results.append(
                    GeocodeResult(request_id=request.id, ok=False, reason="no hits")
                )
                continue

            lock = await self.db.locks.get(request.id)
            async with lock:
                current = self.db.requests.get(request.id)
                if current is None or current.location is not None:
                    results.append(
                        GeocodeResult(request_id=request.id, ok=False, reason="changed")
                    )
                    continue
                self.db.requests.replace(
                    current.model_copy(update={"location": location}),
                    expected_version=current.version,
                )
            results.append(
                GeocodeResult(request_id=request.id, ok=True, location=location)
            )

        logger.info(
            "Geocoded %d of %d requests missing a location",
            sum(r.ok for r in results),
            len(results),
        )
        return results

    def list_my_requests(self, user_id: str) -> list[DonationRequest]:
        user = self.db.users.get(user_id)
        if user is None:
            return []
        return self.db.requests.list_for_requester(user.id, user.uid)

    def list_my_donations(self, user_id: str) -> list[DonationHistoryItem]:
        return [
            DonationHistoryItem(
                response=response, request=self.db.requests.get(response.request_id)
            )
            for response in self.db.responses.list_for_donor(user_id)
        ]

    def recent_requests(
        self,
        lat: float | None = None,
        lng: float | None = None,
        max_distance_km: float | None = None,
        limit: int = 6,
    ) -> list[NearbyRequest]:
        if lat is not None and lng is not None:
            hits = self.db.requests.find_near(
                lat,
                lng,
                max_distance_km or config.RECENT_RADIUS_KM,
                statuses=ACTIVE_STATUSES,
            )
            return [
                NearbyRequest(request=r, distance_km=round(d, 1)) for r, d in hits[:limit]
            ]

        active = [r for r in self.db.requests.all() if r.status in ACTIVE_STATUSES]
        active.sort(key=lambda r: r.created_at, reverse=True)
        return [NearbyRequest(request=r) for r in active[:limit]]
