from typing import Callable, Dict, List, Tuple
from urllib.parse import unquote

import httpx
import pytest
from fastapi.testclient import TestClient

from kickoff.config import Settings
from kickoff.server import create_app

from .factories import run_db

STORE_HOST = "store.test"
CDN_HOST = "cdn.test"
PUBLIC_BASE = "https://shop.test"

SIGN_PREFIX = "/storage/v1/object/sign/"
OBJECT_PREFIX = "/storage/v1/object/"


class FakeUpstream:
    """Supabase Storage (upload, sign, signed GET) plus a plain CDN host."""

    def __init__(self) -> None:
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.uploads: List[str] = []
        self.signed: List[str] = []
        self.fail_uploads = False
        self.upstream_status = 200
        self.hosts: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def put(self, path: str, data: bytes, content_type: str = "image/png"):
        self.objects[path] = (data, content_type)

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host in self.hosts:
            return self.hosts[host](request)
        if host == CDN_HOST:
            return httpx.Response(200, content=b"direct-bytes", headers={
                "content-type": "image/jpeg",
                "cache-control": "max-age=60",
            })
        if host != STORE_HOST:
            return httpx.Response(404)

        path = unquote(request.url.path)
        if request.method == "POST" and path.startswith(SIGN_PREFIX):
            obj = path[len(SIGN_PREFIX):]
            if obj not in self.objects:
                return httpx.Response(400, json={"statusCode": "404",
                                                 "error": "not_found"})
            self.signed.append(obj)
            return httpx.Response(
                200, json={"signedURL": f"/object/sign/{obj}?token=tok"}
            )
        if request.method == "POST" and path.startswith(OBJECT_PREFIX):
            if self.fail_uploads:
                return httpx.Response(500, json={"error": "boom"})
            obj = path[len(OBJECT_PREFIX):]
            self.put(obj, request.content, request.headers["content-type"])
            self.uploads.append(obj)
            return httpx.Response(200, json={"Key": obj})
        if request.method == "GET" and path.startswith(SIGN_PREFIX):
            if self.upstream_status != 200:
                return httpx.Response(self.upstream_status)
            data, content_type = self.objects[path[len(SIGN_PREFIX):]]
            return httpx.Response(200, content=data,
                                  headers={"content-type": content_type})
        return httpx.Response(404)


@pytest.fixture()
def upstream():
    return FakeUpstream()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path}/kickoff.db",
        supabase_url=f"https://{STORE_HOST}",
        supabase_service_key="service-key",
        public_base_url=PUBLIC_BASE,
        session_secret="test-secret",
        admin_username="admin",
        admin_password="pw",
        log_level="DEBUG",
    )


@pytest.fixture()
def make_client(settings, upstream):
    clients = []

    def _make(**kw):
        http = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
        app = create_app(kw.pop("settings", settings), http=http, **kw)
        c = TestClient(app)
        c.__enter__()
        clients.append((c, http))
        return c

    yield _make
    for c, http in clients:
        c.portal.call(http.aclose)
        c.__exit__(None, None, None)


@pytest.fixture()
def client(make_client):
    return make_client()


@pytest.fixture()
def db(client):
    """Run ``await fn(session)`` in one transaction on the app's loop."""
    return lambda fn: run_db(client, fn)


@pytest.fixture()
def seed(db):
    def _seed(*objs):
        async def _add(session):
            session.add_all(objs)
        db(_add)
    return _seed


