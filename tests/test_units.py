import pytest

from kickoff.config import Settings
from kickoff.helpers import ct_equal, normalize_msisdn, to_iso
from kickoff.model.intent import (
    EventTicket,
    IntentError,
    StoreOrder,
    VipPlan,
    decode_intent,
    encode_intent,
)
from kickoff.mpesa import (
    CallbackError,
    SimulatedMpesa,
    new_adapter,
    parse_callback,
    simulated_callback,
)
from kickoff.qr import order_qr_key, render_png, ticket_qr_key

from .factories import stk_callback


@pytest.mark.parametrize("raw, expected", [
    ("0712345678", "254712345678"),
    ("+254712345678", "254712345678"),
    ("254 712-345-678", "254712345678"),
    ("712345678", "254712345678"),
    ("0110345678", "254110345678"),
    ("0812345678", None),
    ("07123", None),
    ("", None),
    (None, None),
])
def test_normalize_msisdn(raw, expected):
    assert normalize_msisdn(raw) == expected


def test_small_helpers():
    assert to_iso(None) is None
    assert to_iso(0).startswith("1970-01-01T00:00:00")
    assert ct_equal("a", "a") and not ct_equal("a", "b")


def test_settings_urls():
    s = Settings(public_base_url="https://shop.test/")
    assert s.friendly_url("/images/order/1") == \
        "https://shop.test/images/order/1"
    assert s.callback_url == "https://shop.test/payments/mpesa/webhook"
    assert s.mpesa_configured is False


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("TASKS_BACKEND", "Redis")
    monkeypatch.setenv("VIP_PRICE", "1500")
    monkeypatch.setenv("MPESA_SHORTCODE", "  ")
    s = Settings.from_env()
    assert s.tasks_backend == "redis"
    assert s.vip_price == 1500
    assert s.mpesa_shortcode is None


class TestIntent:
    @pytest.mark.parametrize("intent", [
        EventTicket(event_id=7, quantity=2, user_id="u1"),
        VipPlan(user_id="u2"),
        StoreOrder(order_id=42),
    ])
    def test_tagged_round_trip(self, intent):
        assert decode_intent(encode_intent(intent)) == intent

    def test_legacy_priority(self):
        data = {"event_id": 7, "plan": "vip", "user_id": "u1"}
        assert decode_intent(data, order_id=42) == \
            EventTicket(event_id=7, quantity=1, user_id="u1")
        assert decode_intent({"plan": "vip", "user_id": "u1"}, 42) == \
            VipPlan(user_id="u1")
        assert decode_intent(None, order_id=42) == StoreOrder(order_id=42)
        assert decode_intent({}) is None
        assert decode_intent(["not", "a", "mapping"], order_id=5) == \
            StoreOrder(order_id=5)

    @pytest.mark.parametrize("data", [
        {"kind": "event_ticket", "event_id": 7},
        {"event_id": 7, "user_id": "u1", "quantity": "lots"},
        {"kind": "vip"},
        {"kind": "raffle"},
        {"kind": "store_order"},
        {"kind": "store_order", "order_id": "x"},
        {"event_id": "seven", "user_id": "u1"},
        {"event_id": True, "user_id": "u1"},
    ])
    def test_invalid(self, data):
        with pytest.raises(IntentError):
            decode_intent(data)


class TestCallbackParsing:
    def test_items_are_flattened(self):
        cb = parse_callback(stk_callback("CR1", receipt="RX9"))
        assert cb.checkout_request_id == "CR1"
        assert cb.ok is True
        assert cb.receipt_number == "RX9"
        assert cb.items["Amount"] == 1500
        assert cb.merchant_request_id == "MR-1"

    def test_failure_code(self):
        cb = parse_callback(stk_callback("CR1", result_code=1032, receipt=""))
        assert cb.ok is False
        assert cb.receipt_number is None

    @pytest.mark.parametrize("body", [
        [], None, {"Body": "x"},
        {"stkCallback": {"CheckoutRequestID": " ", "ResultCode": 0}},
        {"stkCallback": {"CheckoutRequestID": "CR1", "ResultCode": True}},
        {"stkCallback": {"CheckoutRequestID": "CR1", "ResultCode": 0.0}},
    ])
    def test_rejected(self, body):
        with pytest.raises(CallbackError):
            parse_callback(body)

    def test_simulated_callback_parses(self):
        body = simulated_callback("SIM-1", 500, "254712345678", "MR")
        cb = parse_callback(body)
        assert cb.ok and cb.receipt_number.startswith("SIM")
        assert cb.items["PhoneNumber"] == 254712345678

    def test_adapter_selection(self):
        assert isinstance(new_adapter(Settings(), None), SimulatedMpesa)


class TestQr:
    def test_png_is_rendered(self):
        png = render_png("https://shop.test/verify-order/1")
        assert png.startswith(b"\x89PNG\r\n\x1a\n")

    def test_keys(self):
        assert ticket_qr_key(7, "abc") == "tickets/7/abc.png"
        a, b = order_qr_key(1), order_qr_key(1)
        assert a.startswith("orders/1/") and a.endswith(".png")
        assert a != b


def test_app_is_built_by_the_factory(monkeypatch, tmp_path):
    from kickoff import server

    assert not hasattr(server, "app")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path}/env.db")
    monkeypatch.setenv("ADMIN_USERNAME", "ops")
    app = server.create_app()
    assert app.state.settings.admin_username == "ops"
    assert app.state.settings.database_url.endswith("/env.db")
