from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class OfferAcceptPolicy(str, Enum):
    # Accepting an offer only flips the offer; the auction keeps running.
    KEEP_OPEN = "keep_open"
    # Accepting an offer sells the auction to the buyer at the offer amount.
    CLOSE_AUCTION = "close_auction"


class EngineSettings(BaseModel):
    anti_snipe_window_seconds: int = Field(default=60, ge=0)
    offer_ttl_hours: int = Field(default=24, gt=0)
    max_retries: int = Field(default=5, ge=0)
    offer_accept_policy: OfferAcceptPolicy = OfferAcceptPolicy.KEEP_OPEN


class Actor(BaseModel):
    """The authenticated user on whose behalf an owner-only operation runs."""

    user_id: str
    roles: List[str] = []

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles
