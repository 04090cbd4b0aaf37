import pytest

from kickoff.helpers import now_ts
from kickoff.model import ledger
from kickoff.model.db import Order, Payment

from .factories import fetch_one, pending_payment, stk_callback, task_rows

WEBHOOK = "/payments/mpesa/webhook"


@pytest.fixture()
def order_42(seed):
    seed(
        Order(id=42, user_id="u1", status="pending",
              meta={"total_price": 1500}, created_at=now_ts()),
        pending_payment("CR123", order_id=42),
    )


class TestSuccessfulCallback:
    def test_order_is_paid_and_gets_one_qr(self, client, order_42, upstream):
        resp = client.post(WEBHOOK, json=stk_callback("CR123"))
        assert resp.status_code == 200
        assert resp.json() == {"message": "Payment processed successfully"}

        payment = fetch_one(client, Payment, Payment.id == "pay-CR123")
        assert payment.status == "success"
        assert payment.provider_transaction_id == "RCP123"
        assert payment.fulfillment_status == "fulfilled"
        assert payment.paid_at is not None
        assert payment.raw_payload["stkCallback"]["ResultCode"] == 0

        order = fetch_one(client, Order, Order.id == 42)
        assert order.status == "paid"
        assert order.paid_at is not None
        assert order.qr_image_url == "https://shop.test/images/order/42"
        assert order.meta["total_price"] == 1500
        assert order.meta["qr_object_path"].startswith("imageBank/orders/42/")
        assert order.qr_code == "https://shop.test/images/order/42"
        assert "imageBank" not in order.qr_code

        assert len(upstream.uploads) == 1
        data, content_type = upstream.objects[upstream.uploads[0]]
        assert content_type == "image/png"
        assert data.startswith(b"\x89PNG")

        [task] = task_rows(client)
        assert task["id"] == "order_qr:42"
        assert task["status"] == "done"

    def test_redelivery_is_a_noop(self, client, order_42, upstream):
        assert client.post(WEBHOOK, json=stk_callback("CR123")).status_code == 200
        resp = client.post(WEBHOOK, json=stk_callback("CR123"))
        assert resp.status_code == 200
        assert resp.json() == {"message": "Already processed"}
        assert len(upstream.uploads) == 1

    def test_daraja_body_envelope(self, client, order_42):
        resp = client.post(WEBHOOK, json={"Body": stk_callback("CR123")})
        assert resp.json() == {"message": "Payment processed successfully"}

    def test_legacy_api_path(self, client, order_42):
        resp = client.post("/api/payments/mpesa/webhook",
                           json=stk_callback("CR123"))
        assert resp.json() == {"message": "Payment processed successfully"}

    def test_without_receipt_keeps_checkout_id(self, client, order_42):
        client.post(WEBHOOK, json=stk_callback("CR123", receipt=""))
        payment = fetch_one(client, Payment, Payment.id == "pay-CR123")
        assert payment.status == "success"
        assert payment.provider_transaction_id == "CR123"

    def test_lookup_by_receipt_after_settlement(self, client, order_42):
        client.post(WEBHOOK, json=stk_callback("CR123"))
        resp = client.post(WEBHOOK, json=stk_callback("RCP123"))
        assert resp.json() == {"message": "Already processed"}


class TestFailedCallback:
    def test_failed_payment_leaves_order_alone(self, client, order_42,
                                               upstream):
        resp = client.post(
            WEBHOOK,
            json=stk_callback("CR123", result_code=1, receipt="",
                              desc="Request cancelled by user"),
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Payment marked as failed"}

        payment = fetch_one(client, Payment, Payment.id == "pay-CR123")
        assert payment.status == "failed"
        assert payment.result_desc == "Request cancelled by user"
        order = fetch_one(client, Order, Order.id == 42)
        assert order.status == "pending"
        assert order.qr_image_url is None
        assert upstream.uploads == []

    def test_late_success_after_failure_is_ignored(self, client, order_42):
        client.post(WEBHOOK, json=stk_callback("CR123", result_code=1032))
        resp = client.post(WEBHOOK, json=stk_callback("CR123"))
        assert resp.json() == {"message": "Already processed"}
        order = fetch_one(client, Order, Order.id == 42)
        assert order.status == "pending"


class TestRejectedCallbacks:
    def test_unknown_checkout_is_ignored(self, client):
        resp = client.post(WEBHOOK, json=stk_callback("CR-nope"))
        assert resp.status_code == 200
        assert resp.json() == {"message": "Payment ignored (not found)"}

    def test_unparseable_body(self, client):
        resp = client.post(WEBHOOK, content=b"{not json",
                           headers={"content-type": "application/json"})
        assert resp.status_code == 500
        assert "error" in resp.json()

    @pytest.mark.parametrize("body", [
        {},
        {"stkCallback": "x"},
        {"stkCallback": {"ResultCode": 0}},
        {"stkCallback": {"CheckoutRequestID": "CR123", "ResultCode": "0"}},
        {"stkCallback": {"CheckoutRequestID": "CR123"}},
    ])
    def test_malformed_envelope(self, client, body):
        resp = client.post(WEBHOOK, json=body)
        assert resp.status_code == 400
        assert "error" in resp.json()


class TestQrFailure:
    def test_upload_failure_keeps_payment_and_queues_retry(
        self, client, order_42, upstream
    ):
        upstream.fail_uploads = True
        resp = client.post(WEBHOOK, json=stk_callback("CR123"))
        assert resp.json() == {"message": "Payment processed successfully"}

        order = fetch_one(client, Order, Order.id == 42)
        assert order.status == "paid"
        assert order.qr_image_url is None

        [task] = task_rows(client)
        assert task["status"] == "pending"
        assert task["attempts"] == 1
        assert "StorageError" in task["last_error"]
        assert task["run_after"] > now_ts()


class TestUnfulfillable:
    def test_missing_event_marks_fulfillment_failed(self, client, seed):
        seed(pending_payment("CR9", intent={
            "kind": "event_ticket", "event_id": 999, "quantity": 1,
            "user_id": "u1",
        }))
        resp = client.post(WEBHOOK, json=stk_callback("CR9"))
        assert resp.json() == {"message": "Payment processed successfully"}
        payment = fetch_one(client, Payment, Payment.id == "pay-CR9")
        assert payment.status == "success"
        assert payment.fulfillment_status == "failed"
        assert "event 999" in payment.fulfillment_error

    def test_payment_funding_nothing(self, client, seed):
        seed(pending_payment("CR10"))
        client.post(WEBHOOK, json=stk_callback("CR10"))
        payment = fetch_one(client, Payment, Payment.id == "pay-CR10")
        assert payment.status == "success"
        assert payment.fulfillment_status == "failed"


class TestConcurrentDelivery:
    def test_settle_only_wins_once(self, client, order_42, db):
        async def _go(session):
            first = await ledger.settle(session, "pay-CR123", "success",
                                        receipt="RCP1")
            second = await ledger.settle(session, "pay-CR123", "failed")
            return first, second
        assert db(_go) == (True, False)
        payment = fetch_one(client, Payment, Payment.id == "pay-CR123")
        assert payment.status == "success"
        assert payment.provider_transaction_id == "RCP1"

    def test_settle_rejects_non_terminal_status(self, db):
        async def _go(session):
            await ledger.settle(session, "pay-x", "pending")
        with pytest.raises(ValueError):
            db(_go)

    def test_losing_the_claim_does_not_fulfill_twice(
        self, client, order_42, upstream, monkeypatch
    ):
        st = client.app.state
        real_settle = ledger.settle

        # another delivery settles the payment between our read and our write
        async def rival_first(session, payment_id, status, **kw):
            async with st.SessionAsync() as other:
                async with other.begin():
                    assert await real_settle(other, payment_id, "success",
                                             receipt="RIVAL")
            return await real_settle(session, payment_id, status, **kw)

        monkeypatch.setattr(ledger, "settle", rival_first)
        resp = client.post(WEBHOOK, json=stk_callback("CR123"))
        assert resp.status_code == 200
        assert resp.json() == {"message": "Already processed"}

        payment = fetch_one(client, Payment, Payment.id == "pay-CR123")
        assert payment.provider_transaction_id == "RIVAL"
        assert payment.fulfillment_status == "pending"
        order = fetch_one(client, Order, Order.id == 42)
        assert order.status == "pending"
        assert upstream.uploads == []
        assert task_rows(client) == []

    def test_losing_the_claim_on_a_failure_callback(
        self, client, order_42, monkeypatch
    ):
        st = client.app.state
        real_settle = ledger.settle

        async def rival_first(session, payment_id, status, **kw):
            async with st.SessionAsync() as other:
                async with other.begin():
                    await real_settle(other, payment_id, "success")
            return await real_settle(session, payment_id, status, **kw)

        monkeypatch.setattr(ledger, "settle", rival_first)
        resp = client.post(WEBHOOK, json=stk_callback("CR123",
                                                      result_code=1032))
        assert resp.json() == {"message": "Already processed"}
        payment = fetch_one(client, Payment, Payment.id == "pay-CR123")
        assert payment.status == "success"
