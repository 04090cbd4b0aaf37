"""
Payment-to-fulfillment workflow.

``process_callback`` claims the payment and runs the matching fulfillment
branch in one database transaction. QR issuance is not part of it: the
branch returns task references which ``TaskRunner`` works off after commit,
with retries, so a failed upload leaves a visible ``pending``/``dead`` task
instead of a silently missing QR.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .helpers import now_ts
from .model import ledger
from .model.db import (
    FULFILLMENT_DONE,
    FULFILLMENT_FAILED,
    ORDER_PAID,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    Event,
    Order,
    Payment,
    Ticket,
)
from .model.intent import (
    EventTicket,
    IntentError,
    StoreOrder,
    VipPlan,
    decode_intent,
)
from .model.tasks import ORDER_QR, T_DONE, TICKET_QR, TaskRef
from .mpesa import Callback
from .qr import (
    QRIssuer,
    order_qr_key,
    order_qr_path,
    order_verify_url,
    ticket_qr_key,
    ticket_qr_path,
    ticket_verify_url,
)
from . import subscriptions

log = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

MSG_NOT_FOUND = "Payment ignored (not found)"
MSG_ALREADY = "Already processed"
MSG_PROCESSED = "Payment processed successfully"
MSG_FAILED = "Payment marked as failed"


class FulfillmentError(Exception):
    """The payment funds something that does not exist (or nothing at all)."""


@dataclass
class WebhookOutcome:
    message: str
    payment_id: Optional[str] = None
    status: Optional[str] = None
    tasks: List[TaskRef] = field(default_factory=list)


def new_ticket_uid() -> str:
    return str(uuid.uuid4())


def order_has_qr(order: Order, settings: Settings) -> bool:
    return order.qr_image_url == settings.friendly_url(order_qr_path(order.id))


# ----------------------------
# Dispatcher
# ----------------------------
async def fulfill_tickets(db: AsyncSession, payment_id: str,
                          intent: EventTicket) -> List[TaskRef]:
    event = await db.get(Event, intent.event_id)
    if event is None:
        raise FulfillmentError(f"event {intent.event_id} not found")
    now = now_ts()
    tickets = [
        Ticket(
            ticket_uid=new_ticket_uid(),
            event_id=event.id,
            user_id=intent.user_id,
            payment_id=payment_id,
            price=event.unit_price,
            status="valid",
            is_used=False,
            purchased_at=now,
        )
        for _ in range(intent.quantity)
    ]
    db.add_all(tickets)
    # the whole batch lands or none of it does
    await db.flush()
    log.info("issued %d ticket(s) for event %s to user %s",
             len(tickets), event.id, intent.user_id)
    return [TaskRef(TICKET_QR, t.ticket_uid) for t in tickets]


async def fulfill_order(db: AsyncSession, intent: StoreOrder,
                        settings: Settings) -> List[TaskRef]:
    order = await db.get(Order, intent.order_id)
    if order is None:
        raise FulfillmentError(f"order {intent.order_id} not found")
    if order.status != ORDER_PAID:
        order.status = ORDER_PAID
        order.paid_at = now_ts()
    log.info("order %s marked paid", order.id)
    if order_has_qr(order, settings):
        return []
    return [TaskRef(ORDER_QR, str(order.id))]


async def dispatch(db: AsyncSession, payment: Payment,
                   settings: Settings) -> List[TaskRef]:
    """Run exactly one fulfillment branch for a freshly claimed payment."""
    try:
        # rows from the old storefront keep the intent in raw_payload; settle
        # does not refresh the loaded row, so this is still the stored value
        intent = decode_intent(payment.intent or payment.raw_payload,
                               payment.order_id)
    except IntentError as e:
        raise FulfillmentError(str(e)) from e
    if intent is None:
        raise FulfillmentError("payment does not fund anything")

    if isinstance(intent, EventTicket):
        return await fulfill_tickets(db, payment.id, intent)
    if isinstance(intent, VipPlan):
        await subscriptions.activate(
            db, intent.user_id, payment.id,
            interval_days=settings.vip_interval_days,
            price=settings.vip_price,
        )
        log.info("vip activated for user %s", intent.user_id)
        return []
    return await fulfill_order(db, intent, settings)


# ----------------------------
# Webhook core
# ----------------------------
async def process_callback(
    db: AsyncSession,
    gated: Gated,
    cb: Callback,
    raw: Any,
    settings: Settings,
) -> WebhookOutcome:
    async with gated():
        async with db.begin():
            payment = await ledger.find_by_reference(
                db, cb.checkout_request_id
            )
            if payment is None:
                log.warning("callback for unknown checkout %s ignored",
                            cb.checkout_request_id)
                return WebhookOutcome(MSG_NOT_FOUND)
            if payment.status != PAYMENT_PENDING:
                log.info("payment %s already %s", payment.id, payment.status)
                return WebhookOutcome(MSG_ALREADY, payment.id, payment.status)

            if not cb.ok:
                won = await ledger.settle(
                    db, payment.id, PAYMENT_FAILED,
                    raw=raw, desc=cb.result_desc,
                )
                if not won:
                    return WebhookOutcome(MSG_ALREADY, payment.id)
                log.info("payment %s failed: [%s] %s", payment.id,
                         cb.result_code, cb.result_desc)
                return WebhookOutcome(MSG_FAILED, payment.id, PAYMENT_FAILED)

            won = await ledger.settle(
                db, payment.id, PAYMENT_SUCCESS,
                raw=raw, receipt=cb.receipt_number, desc=cb.result_desc,
            )
            if not won:
                return WebhookOutcome(MSG_ALREADY, payment.id)
            log.info("payment %s succeeded (receipt %s)",
                     payment.id, cb.receipt_number)

            try:
                tasks = await dispatch(db, payment, settings)
            except FulfillmentError as e:
                log.error("payment %s cannot be fulfilled: %s",
                          payment.id, e)
                await ledger.record_fulfillment(
                    db, payment.id, FULFILLMENT_FAILED, str(e)
                )
                tasks = []
            else:
                await ledger.record_fulfillment(
                    db, payment.id, FULFILLMENT_DONE
                )
    return WebhookOutcome(MSG_PROCESSED, payment.id, PAYMENT_SUCCESS, tasks)


# ----------------------------
# Follow-up tasks
# ----------------------------
class TaskRunner:
    def __init__(
        self, store, SessionAsync: async_sessionmaker, gated: Gated,
        issuer: QRIssuer, settings: Settings,
    ) -> None:
        self.store = store
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.issuer = issuer
        self.settings = settings

    async def submit(self, refs: List[TaskRef]) -> Dict[str, int]:
        """Enqueue freshly committed work, then try it right away."""
        if not refs:
            return {}
        try:
            await self.store.enqueue(refs)
        except Exception:
            # reconciliation finds paid orders / tickets without QR again
            log.exception("could not enqueue %d follow-up task(s)", len(refs))
            return {}
        return await self.run_many([t.id for t in refs])

    async def run(self, task_id: str) -> Optional[str]:
        task = await self.store.claim(task_id)
        if task is None:
            return None
        try:
            await self._execute(TaskRef.parse(task_id))
        except Exception as e:
            status = await self.store.fail(task_id, f"{type(e).__name__}: {e}")
            log.warning("task %s failed (%s): %s", task_id, status, e)
            return status
        await self.store.complete(task_id)
        log.info("task %s done", task_id)
        return T_DONE

    async def run_many(self, task_ids: List[str]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for task_id in task_ids:
            status = await self.run(task_id)
            if status is not None:
                counts[status] = counts.get(status, 0) + 1
        return counts

    async def drain(self, limit: int = 100) -> Dict[str, int]:
        return await self.run_many(await self.store.due(limit))

    async def _execute(self, ref: TaskRef) -> None:
        if ref.kind == ORDER_QR:
            await self._order_qr(int(ref.ref))
        elif ref.kind == TICKET_QR:
            await self._ticket_qr(ref.ref)
        else:
            raise ValueError(f"unknown task kind {ref.kind!r}")

    async def _order_qr(self, order_id: int) -> None:
        async with self.SessionAsync() as db:
            async with self.gated():
                async with db.begin():
                    order = await db.get(Order, order_id)
            if order is None:
                log.warning("order %s vanished, skipping its QR", order_id)
                return
            if order_has_qr(order, self.settings):
                return

            issued = await self.issuer.issue(
                order_verify_url(self.settings, order_id),
                order_qr_key(order_id),
                order_qr_path(order_id),
            )

            async with self.gated():
                async with db.begin():
                    order = await db.get(Order, order_id,
                                         populate_existing=True)
                    if order is None:
                        return
                    meta = dict(order.meta or {})
                    meta["qr_object_path"] = issued.object_path
                    order.meta = meta
                    order.qr_image_url = issued.friendly_url
                    order.qr_code = issued.friendly_url

    async def _ticket_qr(self, ticket_uid: str) -> None:
        async with self.SessionAsync() as db:
            async with self.gated():
                async with db.begin():
                    ticket = (await db.execute(
                        select(Ticket).where(Ticket.ticket_uid == ticket_uid)
                    )).scalars().first()
            if ticket is None:
                log.warning("ticket %s vanished, skipping its QR", ticket_uid)
                return
            if ticket.qr_object_path:
                return

            issued = await self.issuer.issue(
                ticket_verify_url(self.settings, ticket_uid),
                ticket_qr_key(ticket.event_id, ticket_uid),
                ticket_qr_path(ticket.event_id, ticket_uid),
            )

            async with self.gated():
                async with db.begin():
                    ticket = await db.get(Ticket, ticket.id,
                                          populate_existing=True)
                    if ticket is not None:
                        ticket.qr_object_path = issued.object_path


# ----------------------------
# Reconciliation
# ----------------------------
async def reconcile(
    db: AsyncSession, gated: Gated, runner: TaskRunner, settings: Settings,
    *, limit: int = 500,
) -> Dict[str, Any]:
    """Re-queue missing QR work, drain due tasks, report stuck payments.

    Stale ``pending`` payments are only reported; nobody but the gateway
    decides their outcome.
    """
    cutoff = now_ts() - settings.stale_payment_seconds
    async with gated():
        async with db.begin():
            paid = (await db.execute(
                select(Order).where(Order.status == ORDER_PAID).limit(limit)
            )).scalars().all()
            bare = (await db.execute(
                select(Ticket.ticket_uid)
                .where(Ticket.qr_object_path.is_(None))
                .limit(limit)
            )).scalars().all()
            stale = await ledger.stale_pending(db, cutoff)
            failed = await ledger.unfulfilled(db)

    refs = [TaskRef(ORDER_QR, str(o.id)) for o in paid
            if not order_has_qr(o, settings)]
    refs += [TaskRef(TICKET_QR, uid) for uid in bare]
    if refs:
        await runner.store.enqueue(refs, reset=True)
    ran = await runner.drain(limit=max(100, len(refs)))
    log.info("reconcile: requeued %d task(s), ran %s, %d stale, "
             "%d unfulfilled", len(refs), ran, len(stale), len(failed))
    return {
        "requeued": len(refs),
        "ran": ran,
        "stale_pending": [ledger.as_dict(p) for p in stale],
        "fulfillment_failed": [ledger.as_dict(p) for p in failed],
        "tasks": await runner.store.summary(),
    }
