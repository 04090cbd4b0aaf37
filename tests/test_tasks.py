import fakeredis
import fakeredis.aioredis
import pytest

from kickoff.model.tasks import (
    T_DEAD,
    T_DONE,
    T_PENDING,
    TaskRef,
    new_store,
    retry_delay,
)


@pytest.fixture(params=["pg", "redis"])
def on_store(request, client):
    """Run ``await fn(store)`` against each task backend on the app's loop."""
    st = client.app.state
    server = fakeredis.FakeServer()

    def _run(fn, **kw):
        async def _pg():
            async with st.SessionAsync() as session:
                store = new_store("pg", db=session, gated=st.gated, **kw)
                return await fn(store)

        async def _redis():
            r = fakeredis.aioredis.FakeRedis(server=server,
                                             decode_responses=True)
            try:
                return await fn(new_store("redis", r=r, **kw))
            finally:
                await r.aclose()

        return client.portal.call(_pg if request.param == "pg" else _redis)
    return _run


def test_task_ref_round_trip():
    ref = TaskRef("order_qr", "42")
    assert ref.id == "order_qr:42"
    assert TaskRef.parse(ref.id) == ref
    assert TaskRef.parse("ticket_qr:a:b") == TaskRef("ticket_qr", "a:b")
    for bad in ("order_qr", "order_qr:", "nope:1"):
        with pytest.raises(ValueError):
            TaskRef.parse(bad)


def test_retry_delay_doubles():
    assert [retry_delay(n, 30) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]
    assert retry_delay(0, 30) == 30


def test_new_store_requires_its_backend():
    with pytest.raises(RuntimeError):
        new_store("pg")
    with pytest.raises(RuntimeError):
        new_store("redis")
    with pytest.raises(RuntimeError):
        new_store("mongo")


def test_enqueue_is_idempotent(on_store):
    ref = TaskRef("order_qr", "1")

    async def _go(store):
        await store.enqueue([ref])
        await store.enqueue([ref])
        return await store.recent()
    [row] = on_store(_go)
    assert row["status"] == T_PENDING
    assert row["attempts"] == 0


def test_claim_hands_a_task_out_once(on_store):
    async def _go(store):
        await store.enqueue([TaskRef("ticket_qr", "t1")])
        first = await store.claim("ticket_qr:t1")
        second = await store.claim("ticket_qr:t1")
        # running tasks are not due
        due = await store.due()
        return first, second, due
    first, second, due = on_store(_go)
    assert first["status"] == "running"
    assert second is None
    assert due == []


def test_failure_backs_off_then_dies(on_store):
    async def _go(store):
        await store.enqueue([TaskRef("order_qr", "7")])
        seen = []
        for _ in range(3):
            await store.claim("order_qr:7")
            seen.append(await store.fail("order_qr:7", "boom"))
        [row] = await store.recent()
        return seen, row, await store.summary()
    seen, row, summary = on_store(_go, max_attempts=3, retry_base_seconds=0)
    assert seen == [T_PENDING, T_PENDING, T_DEAD]
    assert row["attempts"] == 3
    assert row["last_error"] == "boom"
    assert summary == {"pending": 0, "running": 0, "done": 0, "dead": 1}


def test_pending_task_waits_for_its_backoff(on_store):
    async def _go(store):
        await store.enqueue([TaskRef("order_qr", "8")])
        await store.claim("order_qr:8")
        await store.fail("order_qr:8", "later")
        return await store.due()
    assert on_store(_go, retry_base_seconds=3600) == []


def test_reset_revives_dead_and_done_tasks(on_store):
    async def _go(store):
        await store.enqueue([TaskRef("order_qr", "9"),
                             TaskRef("order_qr", "10")])
        await store.claim("order_qr:9")
        await store.complete("order_qr:9")
        await store.claim("order_qr:10")
        await store.fail("order_qr:10", "x")
        await store.enqueue([TaskRef("order_qr", "9"),
                             TaskRef("order_qr", "10")], reset=True)
        return sorted(await store.due())
    assert on_store(_go, max_attempts=1) == ["order_qr:10", "order_qr:9"]


def test_recent_filters_by_status(on_store):
    async def _go(store):
        await store.enqueue([TaskRef("order_qr", "1"),
                             TaskRef("order_qr", "2")])
        await store.claim("order_qr:1")
        await store.complete("order_qr:1")
        return await store.recent(T_DONE)
    assert [r["id"] for r in on_store(_go)] == ["order_qr:1"]
