"""
VIP subscriptions.

``activate`` runs inside the webhook's claim transaction. Expiry is never
swept: ``is_vip`` re-derives the status from the stored expiry on every read.
"""
from __future__ import annotations
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import now_ts
from .model.db import SUB_ACTIVE, SUB_PENDING, Subscription, User

DAY = 24 * 3600
VIP_PLAN = "vip_monthly"


async def create_pending(
    db: AsyncSession, user_id: str, *, price: int, interval_days: int,
    plan: str = VIP_PLAN,
) -> Subscription:
    sub = Subscription(
        user_id=user_id,
        plan=plan,
        price=int(price),
        interval_days=int(interval_days),
        status=SUB_PENDING,
        auto_renew=False,
        created_at=now_ts(),
    )
    db.add(sub)
    await db.flush()
    return sub


async def _ensure_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id, role="user", is_vip=False,
                    created_at=now_ts())
        db.add(user)
    return user


async def activate(
    db: AsyncSession,
    user_id: str,
    payment_id: Optional[str],
    *,
    interval_days: int = 30,
    price: int = 2000,
    now: Optional[float] = None,
) -> Subscription:
    now = now_ts() if now is None else now
    expires = now + interval_days * DAY

    user = await _ensure_user(db, user_id)
    if user.role != "admin":
        user.role = "vip"
    user.is_vip = True
    user.vip_expires = expires

    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id,
               Subscription.status == SUB_PENDING)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    sub = result.scalars().first()
    if sub is None:
        # no pending row from initiation; create the active one directly
        sub = Subscription(
            user_id=user_id,
            plan=VIP_PLAN,
            price=int(price),
            interval_days=int(interval_days),
            auto_renew=False,
            created_at=now,
        )
        db.add(sub)
    sub.status = SUB_ACTIVE
    sub.start_date = now
    sub.end_date = expires
    sub.last_payment_id = payment_id
    await db.flush()
    return sub


def is_vip(user: Optional[User], now: Optional[float] = None) -> bool:
    if user is None:
        return False
    if not (user.role == "vip" or user.is_vip):
        return False
    if user.vip_expires is None:
        return True
    return user.vip_expires > (now_ts() if now is None else now)
