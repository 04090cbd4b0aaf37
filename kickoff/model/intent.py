"""
What a payment pays for, decoded once when the callback arrives.

Rows written by the old storefront carry the intent as loose fields in
``raw_payload`` (``event_id``/``quantity``/``user_id`` or ``plan``) next to a
bare ``order_id`` column. New rows carry a tagged ``{"kind": ...}`` mapping in
``payments.intent``. Both decode to the same three shapes.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class EventTicket:
    event_id: int
    quantity: int
    user_id: str
    kind = "event_ticket"


@dataclass(frozen=True)
class VipPlan:
    user_id: str
    plan: str = "vip"
    kind = "vip"


@dataclass(frozen=True)
class StoreOrder:
    order_id: int
    kind = "store_order"


PurchaseIntent = Union[EventTicket, VipPlan, StoreOrder]


class IntentError(ValueError):
    pass


def encode_intent(intent: PurchaseIntent) -> dict:
    if isinstance(intent, EventTicket):
        return {
            "kind": intent.kind,
            "event_id": intent.event_id,
            "quantity": intent.quantity,
            "user_id": intent.user_id,
        }
    if isinstance(intent, VipPlan):
        return {"kind": intent.kind, "user_id": intent.user_id,
                "plan": intent.plan}
    if isinstance(intent, StoreOrder):
        return {"kind": intent.kind, "order_id": intent.order_id}
    raise IntentError(f"unknown intent {intent!r}")


def _id(v: Any, name: str) -> int:
    if isinstance(v, bool):
        raise IntentError(f"invalid {name} {v!r}")
    try:
        return int(v)
    except (TypeError, ValueError):
        raise IntentError(f"invalid {name} {v!r}")


def _quantity(v: Any) -> int:
    q = _id(v or 1, "quantity")
    if q < 1:
        raise IntentError(f"invalid quantity {v!r}")
    return q


def decode_intent(
    data: Optional[Mapping[str, Any]],
    order_id: Optional[int] = None,
) -> Optional[PurchaseIntent]:
    """Decode a stored intent. Legacy priority: event_id > plan=vip > order."""
    # raw_payload may hold something else entirely, e.g. a gateway response
    data = data if isinstance(data, Mapping) else {}
    kind = data.get("kind")

    if kind == EventTicket.kind or (kind is None and data.get("event_id")):
        if not data.get("event_id") or not data.get("user_id"):
            raise IntentError("event ticket intent needs event_id and user_id")
        return EventTicket(
            event_id=_id(data["event_id"], "event_id"),
            quantity=_quantity(data.get("quantity")),
            user_id=str(data["user_id"]),
        )

    if kind == VipPlan.kind or (kind is None and data.get("plan") == "vip"):
        if not data.get("user_id"):
            raise IntentError("vip intent needs user_id")
        return VipPlan(user_id=str(data["user_id"]),
                       plan=data.get("plan") or "vip")

    if kind == StoreOrder.kind:
        return StoreOrder(order_id=_id(data.get("order_id"), "order_id"))

    if kind is not None:
        raise IntentError(f"unknown intent kind {kind!r}")

    if order_id is not None:
        return StoreOrder(order_id=_id(order_id, "order_id"))
    return None
