from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, TypedDict
import base64
import logging
import uuid

import httpx

from .config import Settings

log = logging.getLogger(__name__)

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))


class CallbackError(ValueError):
    pass


class GatewayError(Exception):
    pass


# ----------------------------
# Callback envelope
# ----------------------------
@dataclass
class Callback:
    checkout_request_id: str
    result_code: int
    result_desc: Optional[str] = None
    merchant_request_id: Optional[str] = None
    items: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_number(self) -> Optional[str]:
        v = self.items.get("MpesaReceiptNumber")
        return str(v) if v else None


def parse_callback(body: Any) -> Callback:
    """Accepts ``{stkCallback: ...}`` and Daraja's ``{Body: {stkCallback}}``."""
    if not isinstance(body, dict):
        raise CallbackError("Invalid payload")
    stk = body.get("stkCallback")
    if stk is None and isinstance(body.get("Body"), dict):
        stk = body["Body"].get("stkCallback")
    if not isinstance(stk, dict):
        raise CallbackError("Invalid payload")

    crid = stk.get("CheckoutRequestID")
    if not isinstance(crid, str) or not crid.strip():
        raise CallbackError("Missing CheckoutRequestID")
    rc = stk.get("ResultCode")
    if isinstance(rc, bool) or not isinstance(rc, int):
        raise CallbackError("ResultCode must be an integer")

    items: Dict[str, Any] = {}
    meta = stk.get("CallbackMetadata")
    if isinstance(meta, dict):
        for item in meta.get("Item") or []:
            if isinstance(item, dict) and item.get("Name"):
                items[item["Name"]] = item.get("Value")

    return Callback(
        checkout_request_id=crid.strip(),
        result_code=rc,
        result_desc=stk.get("ResultDesc"),
        merchant_request_id=stk.get("MerchantRequestID"),
        items=items,
    )


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class StkPushResult(TypedDict):
    checkout_request_id: str
    merchant_request_id: Optional[str]
    response: dict


class PaymentAdapter(ABC):
    simulated: bool = False

    @abstractmethod
    async def initiate(
        self, *, amount: int, phone_number: str, account_reference: str,
        description: str = "Payment",
    ) -> StkPushResult: ...


# ----------------------------
# Daraja (Safaricom) STK push
# ----------------------------
class DarajaMpesa(PaymentAdapter):

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self.http = http
        self.settings = settings
        self.base_url = settings.mpesa_base_url.rstrip("/")

    async def _access_token(self) -> str:
        try:
            resp = await self.http.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.settings.mpesa_consumer_key,
                      self.settings.mpesa_consumer_secret),
            )
        except httpx.HTTPError as e:
            raise GatewayError("M-Pesa Authentication Error") from e
        if resp.status_code != 200:
            raise GatewayError("M-Pesa Authentication Failed")
        token = resp.json().get("access_token")
        if not token:
            raise GatewayError("M-Pesa Authentication Failed")
        return token

    def _password(self, timestamp: str) -> str:
        raw = (f"{self.settings.mpesa_shortcode}"
               f"{self.settings.mpesa_passkey}{timestamp}")
        return base64.b64encode(raw.encode()).decode()

    async def initiate(
        self, *, amount: int, phone_number: str, account_reference: str,
        description: str = "Payment",
    ) -> StkPushResult:
        token = await self._access_token()
        timestamp = datetime.now(EAT).strftime("%Y%m%d%H%M%S")
        shortcode = self.settings.mpesa_shortcode
        payload = {
            "BusinessShortCode": shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        try:
            resp = await self.http.post(
                f"{self.base_url}/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise GatewayError("M-Pesa STK push failed") from e
        try:
            data = resp.json()
        except ValueError:
            data = {}
        crid = data.get("CheckoutRequestID")
        if resp.status_code != 200 or not crid:
            log.warning("stk push rejected: HTTP %d %s", resp.status_code,
                        data.get("errorMessage") or data.get("ResponseDescription"))
            raise GatewayError(
                data.get("errorMessage") or "M-Pesa STK push failed"
            )
        return {
            "checkout_request_id": crid,
            "merchant_request_id": data.get("MerchantRequestID"),
            "response": data,
        }


# ----------------------------
# Simulation (no credentials configured)
# ----------------------------
class SimulatedMpesa(PaymentAdapter):
    simulated = True

    async def initiate(
        self, *, amount: int, phone_number: str, account_reference: str,
        description: str = "Payment",
    ) -> StkPushResult:
        crid = f"SIM-{uuid.uuid4().hex}"
        return {
            "checkout_request_id": crid,
            "merchant_request_id": f"SIM-MR-{uuid.uuid4().hex[:12]}",
            "response": {"simulation": True, "CheckoutRequestID": crid},
        }


def simulated_callback(
    checkout_request_id: str, amount: int, phone_number: str,
    merchant_request_id: Optional[str] = None,
) -> dict:
    """A successful callback as Daraja would deliver it."""
    receipt = f"SIM{uuid.uuid4().hex[:7].upper()}"
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": merchant_request_id,
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {"Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "TransactionDate",
                     "Value": int(datetime.now(EAT).strftime("%Y%m%d%H%M%S"))},
                    {"Name": "PhoneNumber", "Value": int(phone_number)},
                ]},
                "simulation": True,
            }
        }
    }


def new_adapter(settings: Settings, http: httpx.AsyncClient) -> PaymentAdapter:
    if settings.mpesa_configured:
        return DarajaMpesa(http, settings)
    return SimulatedMpesa()
