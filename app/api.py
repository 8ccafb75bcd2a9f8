import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from app import config
from app.database import Database, get_db
from app.errors import LifecycleError
from app.geocoding import NominatimGeocoder
from app.lifecycle import LifecycleController
from app.models import (
    AvailabilityPayload,
    CreateOfferPayload,
    CreateRequestPayload,
    CreateUserPayload,
    DonationHistoryItem,
    DonationRequest,
    GeocodeResult,
    LocationPayload,
    MarkReadPayload,
    NearbyDonor,
    NearbyRequest,
    Notification,
    RewardEntry,
    User,
)
from app.notifier import Notifier
from app.offers import OfferService
from app.rewards import RewardLedger
from app.scheduler import TimeoutScheduler
from app.users import UserService

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class Services:
    db: Database
    notifier: Notifier
    ledger: RewardLedger
    controller: LifecycleController
    offers: OfferService
    scheduler: TimeoutScheduler
    users: UserService


_services: Services | None = None


def build_services(db: Database) -> Services:
    notifier = Notifier(db)
    ledger = RewardLedger(db)
    controller = LifecycleController(
        db, notifier, ledger=ledger, geocoder=NominatimGeocoder()
    )
    offers = OfferService(db, notifier, controller, ledger=ledger)
    scheduler = TimeoutScheduler(db, notifier, offers=offers)
    users = UserService(db, notifier)
    return Services(db, notifier, ledger, controller, offers, scheduler, users)


def get_services() -> Services:
    """Services bound to the current global database, rebuilt if it was replaced."""
    global _services
    db = get_db()
    if _services is None or _services.db is not db:
        _services = build_services(db)
    return _services


def clear_services() -> None:
    global _services
    _services = None


ServicesDep = Annotated[Services, Depends(get_services)]


def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def optional_user_id(
    services: ServicesDep, authorization: Annotated[str | None, Header()] = None
) -> str | None:
    """Resolve the caller from `Authorization: Bearer <uid>`; None when anonymous."""
    token = _bearer(authorization)
    user = services.db.users.resolve(token)
    return user.id if user else None


def current_user_id(
    user_id: Annotated[str | None, Depends(optional_user_id)],
) -> str:
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not identified",
        )
    return user_id


CurrentUser = Annotated[str, Depends(current_user_id)]
OptionalUser = Annotated[str | None, Depends(optional_user_id)]


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/users")
async def save_user(payload: CreateUserPayload, services: ServicesDep) -> User:
    """Create or update a user profile keyed by its external uid."""
    existing = services.db.users.get_by_uid(payload.uid)
    if existing is None:
        user = User(**payload.model_dump())
    else:
        user = existing.model_copy(
            update={field: getattr(payload, field) for field in payload.model_fields_set}
        )
    user = user.model_copy(update={"updated_at": datetime.now(UTC)})
    services.db.users.put(user.id, user)
    return user


@router.get("/users/me")
async def current_user(services: ServicesDep, user_id: CurrentUser) -> User:
    return services.users.get(user_id)


@router.post("/users/availability")
async def update_availability(
    payload: AvailabilityPayload, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    user = await services.users.update_availability(
        user_id, payload.available, payload.location
    )
    return {"available": user.available}


@router.post("/users/location")
async def update_location(
    payload: LocationPayload, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    user = services.users.update_location(user_id, payload.lat, payload.lng)
    return {"message": "Location updated", "location": user.location}


@router.get("/donors/nearby")
async def nearby_donors(
    services: ServicesDep,
    lat: float | None = None,
    lng: float | None = None,
    max_distance_km: float | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 6,
) -> list[NearbyDonor]:
    return services.users.nearby_donors(lat, lng, max_distance_km, limit)


@router.post("/requests")
async def create_request(
    payload: CreateRequestPayload, services: ServicesDep, user_id: OptionalUser
) -> dict[str, Any]:
    request = await services.controller.create_request(payload, user_id)
    return {"ok": True, "request_id": request.id, "request": request}


def _geocode_row(result: GeocodeResult) -> dict[str, Any]:
    row: dict[str, Any] = {"id": result.request_id, "ok": result.ok}
    if result.location is None:
        row["reason"] = result.reason
    else:
        row["lat"] = result.location.lat
        row["lon"] = result.location.lng
    return row


@router.post("/requests/geocode-missing")
async def geocode_missing(
    services: ServicesDep,
    x_geocode_secret: Annotated[str | None, Header()] = None,
    secret: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> dict[str, Any]:
    """Backfill coordinates for open requests. Guarded by a shared secret."""
    provided = x_geocode_secret or secret
    if (
        not config.GEOCODER_SECRET
        or provided is None
        or not secrets.compare_digest(provided, config.GEOCODER_SECRET)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    results = await services.controller.geocode_missing(limit)
    return {
        "ok": True,
        "processed": len(results),
        "results": [_geocode_row(result) for result in results],
    }


@router.get("/requests/recent")
async def recent_requests(
    services: ServicesDep,
    lat: float | None = None,
    lng: float | None = None,
    max_distance_km: float | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 6,
) -> list[NearbyRequest]:
    return services.controller.recent_requests(lat, lng, max_distance_km, limit)


@router.get("/requests/mine")
async def my_requests(services: ServicesDep, user_id: CurrentUser) -> list[DonationRequest]:
    return services.controller.list_my_requests(user_id)


@router.get("/donations/mine")
async def my_donations(
    services: ServicesDep, user_id: CurrentUser
) -> list[DonationHistoryItem]:
    return services.controller.list_my_donations(user_id)


@router.post("/requests/{request_id}/claim")
async def claim_request(
    request_id: str, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    """
    Claim a request. The first donor becomes primary, later donors queue as
    backups. Concurrent claims are serialized per request.
    """
    result = await services.controller.claim(request_id, user_id)
    return {"ok": True, "role": result.role.value, "message": result.message}


@router.post("/requests/{request_id}/interest")
async def register_interest(
    request_id: str, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    await services.controller.register_interest(request_id, user_id)
    return {
        "ok": True,
        "message": "Confirmation email sent. Please check your inbox.",
    }


@router.get("/interest/confirm")
async def confirm_interest(
    token: str, response: str, services: ServicesDep
) -> dict[str, Any]:
    result = await services.controller.confirm_interest(token, response)
    if result is None:
        return {
            "status": "declined",
            "message": "Thank you for letting us know. You were not assigned.",
        }
    return {"status": "assigned", "role": result.role.value, "message": result.message}


@router.post("/requests/{request_id}/arrival")
async def confirm_arrival(
    request_id: str, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    await services.controller.confirm_arrival(request_id, user_id)
    return {"ok": True, "message": "Arrival confirmed"}


@router.post("/requests/{request_id}/complete")
async def complete_donation(
    request_id: str, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    await services.controller.complete(request_id, user_id)
    return {
        "ok": True,
        "message": "Verification request sent to requester. Rewards pending confirmation.",
    }


@router.post("/requests/{request_id}/cancel")
async def cancel_donation(
    request_id: str, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    message = await services.controller.cancel(request_id, user_id)
    return {"ok": True, "message": message}


@router.post("/requests/{request_id}/close")
async def close_request(
    request_id: str, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    await services.controller.close_request(request_id, user_id)
    return {"ok": True, "message": "Request deleted successfully."}


@router.get("/requests/{request_id}/verify")
async def verify_donation(
    request_id: str,
    response: str,
    services: ServicesDep,
    user_id: OptionalUser,
    token: str | None = None,
) -> dict[str, Any]:
    """Answer a verification. Needs the emailed link's token or the requester's login."""
    result = await services.controller.verify_donation(
        request_id, response, token=token, user_id=user_id
    )
    return {"ok": True, "status": result.status.value, "rewards": len(result.rewards)}


@router.post("/offers")
async def create_offer(
    payload: CreateOfferPayload, services: ServicesDep, user_id: OptionalUser
) -> dict[str, Any]:
    created = await services.offers.create_offer(payload, user_id)
    return {"ok": True, "offer_id": created.offer.id, "whatsapp": created.whatsapp}


@router.get("/offers/respond")
async def respond_offer(token: str, response: str, services: ServicesDep) -> dict[str, Any]:
    offer = await services.offers.respond_offer(token, response)
    return {"ok": True, "response": offer.response, "status": offer.status.value}


@router.get("/offers/{offer_id}/follow-up")
async def follow_up_respond(
    offer_id: str, response: str, services: ServicesDep
) -> dict[str, Any]:
    offer = await services.offers.follow_up_respond(offer_id, response)
    return {"ok": True, "response": offer.follow_up_response}


@router.get("/rewards/leaderboard")
async def leaderboard(
    services: ServicesDep, limit: Annotated[int, Query(ge=1, le=100)] = 50
) -> list[dict[str, Any]]:
    return [
        {
            "name": user.name,
            "coins": user.coins,
            "leaderboard_points": user.leaderboard_points,
        }
        for user in services.ledger.leaderboard(limit)
    ]


@router.get("/rewards/mine")
async def my_rewards(services: ServicesDep, user_id: CurrentUser) -> list[RewardEntry]:
    return services.ledger.history(user_id)


@router.get("/notifications")
async def notifications(services: ServicesDep, user_id: CurrentUser) -> list[Notification]:
    return services.notifier.inbox(user_id)


@router.post("/notifications/mark-read")
async def mark_notifications_read(
    payload: MarkReadPayload, services: ServicesDep, user_id: CurrentUser
) -> dict[str, Any]:
    if not payload.mark_all and not payload.ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide ids or set mark_all",
        )
    count = services.notifier.mark_read(user_id, payload.ids, payload.mark_all)
    return {"ok": True, "modified": count}


async def _lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    scheduler = get_services().scheduler if config.SCHEDULER_ENABLED else None
    if scheduler is not None:
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


def create_app() -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL)
    app = FastAPI(lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(LifecycleError, _lifecycle_error_handler)
    return app
