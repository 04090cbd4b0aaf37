"""
Image reference resolution and proxying.

Stored image references come in several shapes:

* absolute ``http(s)://`` URLs and ``data:`` URLs, used as they are
* legacy tokens ``i/<base64url json>[.signature]`` whose ``p`` field holds
  the real storage path
* bucket-relative paths, optionally prefixed with a known bucket name

Object references are turned into a short-lived signed URL which the proxy
fetches itself, so clients only ever see our own ``/images/...`` paths.
"""
from __future__ import annotations
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union
from urllib.parse import unquote_to_bytes

import httpx

from .infra.storage import ObjectStorage, StorageError

log = logging.getLogger(__name__)

KNOWN_BUCKETS = ("uploads", "imageBank", "public")
DEFAULT_BUCKET = "uploads"
DEFAULT_CACHE_CONTROL = "public, max-age=31536000, immutable"
OCTET_STREAM = "application/octet-stream"

_TOKEN_RE = re.compile(r"^/?i/([^.]+)")


class ImageNotFound(Exception):
    pass


class UpstreamError(Exception):
    pass


@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str


@dataclass(frozen=True)
class DirectRef:
    url: str


ImageRef = Union[ObjectRef, DirectRef]


# ----------------------------
# Resolution
# ----------------------------
def decode_legacy_token(ref: str) -> str:
    """``i/<token>`` -> the ``p`` path inside it; anything else unchanged."""
    m = _TOKEN_RE.match(ref)
    if m is None:
        return ref
    b64 = m.group(1).replace("-", "+").replace("_", "/")
    pad = len(b64) % 4
    if pad:
        b64 += "=" * (4 - pad)
    try:
        data = json.loads(base64.b64decode(b64))
    except (binascii.Error, ValueError):
        log.warning("could not decode image token, using it as a path")
        return ref
    if isinstance(data, dict) and data.get("p"):
        return str(data["p"])
    return ref


def split_bucket(path: str,
                 default_bucket: str = DEFAULT_BUCKET) -> Tuple[str, str]:
    path = path.lstrip("/")
    if "/" in path:
        first, rest = path.split("/", 1)
        if first in KNOWN_BUCKETS or first == default_bucket:
            return first, rest
    return default_bucket, path


def is_direct(ref: str) -> bool:
    return ref.startswith(("http://", "https://", "data:"))


def resolve_reference(
    ref: Optional[str],
    *,
    default_bucket: str = DEFAULT_BUCKET,
    allow_direct: bool = True,
) -> Optional[ImageRef]:
    if ref is None or not ref.strip():
        return None
    ref = ref.strip()
    if is_direct(ref):
        return DirectRef(ref) if allow_direct else None
    bucket, key = split_bucket(decode_legacy_token(ref), default_bucket)
    if not key:
        return None
    return ObjectRef(bucket=bucket, key=key)


def decode_data_url(url: str) -> Tuple[bytes, str]:
    header, sep, data = url[len("data:"):].partition(",")
    if not sep:
        raise ImageNotFound("malformed data url")
    parts = header.split(";")
    content_type = parts[0] or "text/plain"
    try:
        if "base64" in parts[1:]:
            return base64.b64decode(data), content_type
        return unquote_to_bytes(data), content_type
    except (binascii.Error, ValueError) as e:
        raise ImageNotFound("malformed data url") from e


# ----------------------------
# Fetching
# ----------------------------
@dataclass
class ProxiedImage:
    content_type: str
    cache_control: str
    # exactly one of these is set
    upstream: Optional[httpx.Response] = None
    content: Optional[bytes] = None


class ImageProxy:
    def __init__(self, storage: ObjectStorage, http: httpx.AsyncClient,
                 ttl: int = 60) -> None:
        self.storage = storage
        self.http = http
        self.ttl = ttl

    async def open(
        self,
        ref: Optional[ImageRef],
        *,
        default_content_type: str = OCTET_STREAM,
        not_found: str = "Image not found",
    ) -> ProxiedImage:
        """Resolve ``ref`` and open the upstream body as a stream.

        Callers must ``aclose()`` ``ProxiedImage.upstream`` once done.
        """
        if ref is None:
            raise ImageNotFound(not_found)

        if isinstance(ref, DirectRef) and ref.url.startswith("data:"):
            content, content_type = decode_data_url(ref.url)
            return ProxiedImage(content_type=content_type,
                                cache_control=DEFAULT_CACHE_CONTROL,
                                content=content)

        if isinstance(ref, DirectRef):
            url = ref.url
        else:
            try:
                url = await self.storage.sign(ref.bucket, ref.key, self.ttl)
            except StorageError as e:
                log.warning("sign failed for %s/%s: %s",
                            ref.bucket, ref.key, e)
                raise ImageNotFound(not_found) from e

        try:
            resp = await self.http.send(
                self.http.build_request("GET", url), stream=True
            )
        except httpx.HTTPError as e:
            log.warning("upstream fetch failed: %s", type(e).__name__)
            raise UpstreamError("Upstream error") from e

        if not resp.is_success:
            log.warning("upstream fetch answered %d", resp.status_code)
            await resp.aclose()
            raise UpstreamError("Upstream error")

        return ProxiedImage(
            content_type=resp.headers.get("content-type")
            or default_content_type,
            cache_control=resp.headers.get("cache-control")
            or DEFAULT_CACHE_CONTROL,
            upstream=resp,
        )
