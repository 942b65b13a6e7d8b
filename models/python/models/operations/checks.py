"""Input and permission checks shared by auction and offer operations."""

import math
import numbers
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from models.entities.couchbase.auctions import AuctionData
from models.operations.errors import ForbiddenError, InvalidInputError
from models.operations.settings import Actor


def parse_payload(model: type, payload: Any):
    """Validate a dict (or pass through a model instance) as *model*."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidInputError(f"Invalid {model.__name__}: {details}") from e


def check_amount(value: Any, message: str) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidInputError(message)
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise InvalidInputError(message)
    return value


def check_id(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"Invalid {what} ID")
    return value


def check_owner(data: AuctionData, actor: Actor, action: str) -> None:
    if data.owner_id != actor.user_id and not actor.is_admin:
        raise ForbiddenError(f"You can only {action} your own auctions")


def validate_terms(
    starting_price: float,
    reserve_price: Optional[float],
    buy_now_price: Optional[float],
    start_time: datetime,
    end_time: datetime,
) -> None:
    """Static auction invariants, shared by create and update."""
    if reserve_price is not None and reserve_price <= starting_price:
        raise InvalidInputError("Reserve price must be greater than starting price")
    if buy_now_price is not None and buy_now_price <= starting_price:
        raise InvalidInputError("Buy now price must be greater than starting price")
    if reserve_price is not None and buy_now_price is not None and reserve_price > buy_now_price:
        raise InvalidInputError("Reserve price cannot be higher than buy now price")
    if end_time <= start_time:
        raise InvalidInputError("End time must be after start time")
