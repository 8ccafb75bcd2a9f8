"""
Offers: contacting a prospective donor outside the app before they claim.

The donor answers once through an emailed token link; a `yes` from a known
user runs the regular claim. A day later the requester is asked, once,
whether the donation happened.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote

from app import config
from app.database import Database
from app.errors import LifecycleError, OfferNotFound, RequestNotFound, ValidationFailed
from app.lifecycle import Clock, LifecycleController, requester_of
from app.models import (
    CreateOfferPayload,
    DonorSnapshot,
    Offer,
    OfferStatus,
    RewardCategory,
)
from app.notifier import Notifier
from app.rewards import OFFER_DONOR_COINS_PER_UNIT, OFFER_REQUESTER_COINS, RewardLedger

logger = logging.getLogger(__name__)


def whatsapp_link(phone: str | None, text: str) -> str | None:
    if not phone:
        return None
    digits = re.sub(r"[^\d]", "", phone)
    if not digits:
        return None
    return f"https://wa.me/{digits}?text={quote(text)}"


@dataclass
class OfferCreated:
    offer: Offer
    whatsapp: str | None


class OfferService:
    def __init__(
        self,
        db: Database,
        notifier: Notifier,
        controller: LifecycleController,
        ledger: RewardLedger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.controller = controller
        self.ledger = ledger or controller.ledger
        self.clock = clock or controller.clock

    def _snapshot(
        self, payload: CreateOfferPayload, donor_ref: str | None
    ) -> tuple[DonorSnapshot, str | None]:
        donor = self.db.users.resolve(donor_ref)
        given = DonorSnapshot(
            name=payload.name, phone=payload.phone, email=payload.email, age=payload.age
        )
        if donor is None:
            return given, None

        # Fill gaps in the profile from what the donor typed in just now.
        backfill = {}
        if not donor.phone and given.phone:
            backfill["phone"] = given.phone.strip()
        if donor.age is None and given.age is not None:
            backfill["age"] = given.age
        if backfill:
            donor = donor.model_copy(update=backfill)
            self.db.users.put(donor.id, donor)
        return DonorSnapshot.from_user(donor), donor.id

    async def create_offer(
        self, payload: CreateOfferPayload, donor_ref: str | None = None
    ) -> OfferCreated:
        request = self.db.requests.get(payload.request_id)
        if request is None:
            raise RequestNotFound(f"Request {payload.request_id} not found")

        snapshot, donor_id = self._snapshot(payload, donor_ref)
        if not snapshot.phone:
            raise ValidationFailed("Donor phone is required to create an offer")

        now = self.clock()
        offer = Offer(
            request_id=request.id,
            donor_user_id=donor_id,
            donor_snapshot=snapshot,
            token=secrets.token_hex(18),
            units=max(payload.units, 1),
            created_at=now,
            follow_up_at=now + config.OFFER_FOLLOW_UP_DELAY,
        )
        self.db.offers.put(offer.id, offer)

        respond_url = f"{config.SERVER_BASE}/offers/respond?token={offer.token}"
        recipient = self.db.users.get(donor_id) if donor_id else snapshot.email
        await self.notifier.notify(
            recipient,
            "offer_request",
            {
                "patient": request.name,
                "hospital": request.hospital,
                "yes_url": f"{respond_url}&response=yes",
                "no_url": f"{respond_url}&response=no",
            },
        )

        link = whatsapp_link(
            snapshot.phone,
            f"Hi {snapshot.name or ''}, are you willing to donate blood to "
            f"{request.name}? Please reply YES or NO.",
        )
        logger.info("Created offer %s for request %s", offer.id, request.id)
        return OfferCreated(offer=offer, whatsapp=link)

    async def respond_offer(self, token: str, response: str) -> Offer:
        """Record the donor's answer. Only the first answer counts."""
        offer = self.db.offers.get_by_token(token)
        if offer is None:
            raise OfferNotFound()
        if offer.response is not None:
            return offer

        answer = "yes" if response == "yes" else "no"
        offer.response = answer
        offer.responded_at = self.clock()
        offer.status = OfferStatus.ACCEPTED if answer == "yes" else OfferStatus.DECLINED
        if answer == "no":
            return offer

        if offer.donor_user_id is not None:
            try:
                await self.controller.claim(offer.request_id, offer.donor_user_id)
            except LifecycleError as e:
                logger.warning(
                    "Offer %s accepted but claim was rejected: %s", offer.id, e.message
                )

        request = self.db.requests.get(offer.request_id)
        if request is not None:
            donor = offer.donor_snapshot.merged_with(
                self.db.users.get(offer.donor_user_id) if offer.donor_user_id else None
            )
            await self.notifier.notify(
                requester_of(self.db, request),
                "offer_accepted",
                {
                    "donor": donor.name or "A donor",
                    "age": donor.age if donor.age is not None else "-",
                    "phone": donor.phone or "-",
                    "email": donor.email or "-",
                },
            )
        return offer

    async def follow_up_sweep(self, now: datetime) -> tuple[int, int]:
        """Ask requesters about offers whose follow-up time has passed. Returns (sent, failed)."""
        sent = failed = 0
        for offer in self.db.offers.due_for_follow_up(now):
            try:
                offer.follow_up_sent = True
                offer.follow_up_sent_at = now
                request = self.db.requests.get(offer.request_id)
                if request is None:
                    continue
                requester = requester_of(self.db, request)
                if requester is None or not requester.email:
                    logger.info("No requester email for offer %s", offer.id)
                    continue

                respond_url = f"{config.SERVER_BASE}/offers/{offer.id}/follow-up"
                await self.notifier.notify(
                    requester,
                    "offer_follow_up",
                    {
                        "donor": offer.donor_snapshot.name or "the donor",
                        "hospital": request.hospital,
                        "yes_url": f"{respond_url}?response=yes",
                        "no_url": f"{respond_url}?response=no",
                    },
                )
                sent += 1
            except Exception:
                failed += 1
                logger.exception("Follow-up failed for offer %s", offer.id)
        return sent, failed

    async def follow_up_respond(self, offer_id: str, response: str) -> Offer:
        offer = self.db.offers.get(offer_id)
        if offer is None:
            raise OfferNotFound()
        if offer.follow_up_response is not None:
            return offer

        now = self.clock()
        answer = "yes" if response == "yes" else "no"
        offer.follow_up_response = answer
        offer.follow_up_responded_at = now
        if answer == "no":
            return offer

        request = self.db.requests.get(offer.request_id)
        donor = self.db.users.get(offer.donor_user_id) if offer.donor_user_id else None
        if donor is not None:
            coins = OFFER_DONOR_COINS_PER_UNIT * offer.units
            self.ledger.grant(
                donor.id,
                offer.request_id,
                coins,
                0,
                RewardCategory.OFFER_CONFIRMED,
                now,
                patient_name=request.name if request else None,
                hospital=request.hospital if request else None,
                counts_donation=True,
            )
            await self.notifier.notify(donor, "offer_rewarded", {"coins": coins})

        requester = requester_of(self.db, request) if request else None
        if requester is not None:
            self.ledger.grant(
                requester.id,
                offer.request_id,
                OFFER_REQUESTER_COINS,
                0,
                RewardCategory.OFFER_ACKNOWLEDGED,
                now,
                patient_name=request.name,
                hospital=request.hospital,
            )
        return offer
