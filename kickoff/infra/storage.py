from abc import ABC, abstractmethod
from urllib.parse import quote
import logging

import httpx

log = logging.getLogger(__name__)


class StorageError(Exception):
    pass


# ----------------------------
# Object storage interface
# ----------------------------
class ObjectStorage(ABC):
    @abstractmethod
    async def upload(self, bucket: str, key: str, data: bytes,
                     content_type: str) -> str:
        """Write (overwrite) an object; returns ``"<bucket>/<key>"``."""

    @abstractmethod
    async def sign(self, bucket: str, key: str, ttl: int) -> str:
        """Mint a short-lived absolute URL for reading an object."""


# ----------------------------
# Supabase Storage over REST
# ----------------------------
class SupabaseStorage(ObjectStorage):
    def __init__(self, http: httpx.AsyncClient, base_url: str,
                 service_key: str) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

    def _object_url(self, *parts: str) -> str:
        return "/".join([f"{self.base_url}/storage/v1/object", *parts])

    async def upload(self, bucket: str, key: str, data: bytes,
                     content_type: str) -> str:
        url = self._object_url(quote(bucket), quote(key))
        headers = self._headers()
        headers.update({"Content-Type": content_type, "x-upsert": "true"})
        try:
            resp = await self.http.post(url, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"upload {bucket}/{key}: {e}") from e
        if resp.status_code >= 300:
            raise StorageError(
                f"upload {bucket}/{key}: HTTP {resp.status_code}"
            )
        return f"{bucket}/{key}"

    async def sign(self, bucket: str, key: str, ttl: int) -> str:
        url = self._object_url("sign", quote(bucket), quote(key))
        try:
            resp = await self.http.post(
                url, json={"expiresIn": int(ttl)}, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise StorageError(f"sign {bucket}/{key}: {e}") from e
        if resp.status_code >= 300:
            raise StorageError(f"sign {bucket}/{key}: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise StorageError(f"sign {bucket}/{key}: bad response") from e
        signed = body.get("signedURL") or body.get("signedUrl")
        if not signed:
            raise StorageError(f"sign {bucket}/{key}: no signed url")
        if signed.startswith("http://") or signed.startswith("https://"):
            return signed
        return f"{self.base_url}/storage/v1/{signed.lstrip('/')}"
