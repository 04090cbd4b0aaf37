import asyncio
import io
import logging
import uuid
from dataclasses import dataclass

import qrcode

from .config import Settings
from .infra.storage import ObjectStorage

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedQR:
    object_path: str   # "<bucket>/<key>"
    friendly_url: str  # routed through the image proxy


def render_png(payload: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=8, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# ----------------------------
# Key / URL conventions
# ----------------------------
def order_qr_key(order_id: int) -> str:
    return f"orders/{order_id}/{uuid.uuid4().hex}.png"


def ticket_qr_key(event_id: int, ticket_uid: str) -> str:
    return f"tickets/{event_id}/{ticket_uid}.png"


def order_qr_path(order_id: int) -> str:
    return f"images/order/{order_id}"


def ticket_qr_path(event_id: int, ticket_uid: str) -> str:
    return f"images/ticket/{event_id}/{ticket_uid}"


def order_verify_url(settings: Settings, order_id: int) -> str:
    return settings.friendly_url(f"verify-order/{order_id}")


def ticket_verify_url(settings: Settings, ticket_uid: str) -> str:
    return settings.friendly_url(f"tickets/verify/{ticket_uid}")


class QRIssuer:
    """Render a payload, upload it, hand back where it lives.

    Uploads overwrite, so issuing twice for the same key is harmless.
    Storage failures propagate as ``StorageError``; the task runner owns
    retrying them.
    """

    def __init__(self, storage: ObjectStorage, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings

    async def issue(self, payload: str, storage_key: str,
                    friendly_path: str) -> IssuedQR:
        png = await asyncio.to_thread(render_png, payload)
        object_path = await self.storage.upload(
            self.settings.qr_bucket, storage_key, png, "image/png"
        )
        log.info("qr issued at %s (%d bytes)", object_path, len(png))
        return IssuedQR(
            object_path=object_path,
            friendly_url=self.settings.friendly_url(friendly_path),
        )
