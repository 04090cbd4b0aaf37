# model/ledger.py
"""
Payment ledger: one row per payment attempt.

A payment leaves ``pending`` exactly once. ``settle`` is a compare-and-swap on
the status column, so two concurrent deliveries of the same callback cannot
both win, regardless of what either of them read beforehand.
"""
from __future__ import annotations
import uuid
from typing import Any, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import (
    FULFILLMENT_FAILED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    Payment,
)
from .intent import PurchaseIntent, StoreOrder, encode_intent


async def create_pending(
    db: AsyncSession,
    *,
    intent: PurchaseIntent,
    amount: int,
    phone_number: str,
    provider: str = "mpesa",
) -> Payment:
    payment_id = uuid.uuid4().hex
    # placeholder until the gateway hands out its CheckoutRequestID
    placeholder = f"pending-{payment_id}"
    payment = Payment(
        id=payment_id,
        checkout_request_id=placeholder,
        provider_transaction_id=placeholder,
        provider=provider,
        amount=int(amount),
        phone_number=phone_number,
        status=PAYMENT_PENDING,
        order_id=(
            intent.order_id if isinstance(intent, StoreOrder) else None
        ),
        intent=encode_intent(intent),
        created_at=now_ts(),
    )
    db.add(payment)
    await db.flush()
    return payment


async def attach_checkout(
    db: AsyncSession,
    payment_id: str,
    checkout_request_id: str,
    response: Optional[dict] = None,
) -> None:
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id)
        .values(
            checkout_request_id=checkout_request_id,
            provider_transaction_id=checkout_request_id,
            raw_payload=response,
            updated_at=now_ts(),
        )
        .execution_options(synchronize_session=False)
    )


async def find_by_reference(
    db: AsyncSession, reference: str
) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(or_(
            Payment.checkout_request_id == reference,
            Payment.provider_transaction_id == reference,
        )).limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get(db: AsyncSession, payment_id: str) -> Optional[Payment]:
    return await db.get(Payment, payment_id)


async def settle(
    db: AsyncSession,
    payment_id: str,
    status: str,
    *,
    raw: Any = None,
    receipt: Optional[str] = None,
    desc: Optional[str] = None,
) -> bool:
    """pending -> success|failed. Returns False if someone else got there."""
    if status not in (PAYMENT_SUCCESS, PAYMENT_FAILED):
        raise ValueError(f"not a terminal payment status: {status!r}")
    now = now_ts()
    values = {
        "status": status,
        "raw_payload": raw,
        "result_desc": desc,
        "updated_at": now,
    }
    if status == PAYMENT_SUCCESS:
        values["paid_at"] = now
        if receipt:
            values["provider_transaction_id"] = receipt
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_fulfillment(
    db: AsyncSession,
    payment_id: str,
    status: str,
    error: Optional[str] = None,
) -> None:
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id)
        .values(fulfillment_status=status, fulfillment_error=error,
                updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )


async def stale_pending(
    db: AsyncSession, older_than: float, limit: int = 200
) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.status == PAYMENT_PENDING,
               Payment.created_at < older_than)
        .order_by(Payment.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def recent_pending(db: AsyncSession, limit: int = 100) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.status == PAYMENT_PENDING)
        .order_by(Payment.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def unfulfilled(db: AsyncSession, limit: int = 200) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.status == PAYMENT_SUCCESS,
               Payment.fulfillment_status == FULFILLMENT_FAILED)
        .order_by(Payment.paid_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def as_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "status": p.status,
        "amount": p.amount,
        "provider": p.provider,
        "order_id": p.order_id,
        "intent": p.intent,
        "fulfillment_status": p.fulfillment_status,
        "fulfillment_error": p.fulfillment_error,
        "result_desc": p.result_desc,
        "created_at": p.created_at,
        "paid_at": p.paid_at,
    }
