from __future__ import annotations
from typing import Optional, Dict, Any, List, Iterable
import redis.asyncio as redis

from ...helpers import now_ts
from ._base import (
    STATUSES, STUCK_SECONDS, T_DEAD, T_DONE, T_PENDING, T_RUNNING,
    TaskRef, retry_delay,
)


# ---- keys
def k_task(task_id: str) -> str: return f"task:{task_id}"


PENDING_Z = "tasks:pending"   # score = run_after
RUNNING_Z = "tasks:running"   # score = claimed at
DEAD_Z = "tasks:dead"         # score = died at
DONE_Z = "tasks:done"         # score = completed at, capped
DONE_KEEP = 1000

_INDEX = {
    T_PENDING: PENDING_Z,
    T_RUNNING: RUNNING_Z,
    T_DONE: DONE_Z,
    T_DEAD: DEAD_Z,
}


def _row(task_id: str, h: Dict[str, str]) -> Dict[str, Any]:
    return {
        "id": task_id,
        "kind": h.get("kind"),
        "ref": h.get("ref"),
        "status": h.get("status"),
        "attempts": int(h.get("attempts") or 0),
        "last_error": h.get("last_error") or None,
        "run_after": float(h.get("run_after") or 0),
        "updated_at": float(h.get("updated_at") or 0),
    }


class TaskStore:
    def __init__(self, *, r: redis.Redis, max_attempts: int,
                 retry_base_seconds: int) -> None:
        self.r = r
        self.max_attempts = max_attempts
        self.retry_base = retry_base_seconds

    async def _move(self, task_id: str, status: str, score: float,
                    **fields: Any) -> None:
        pipe = self.r.pipeline(transaction=True)
        for z in _INDEX.values():
            pipe.zrem(z, task_id)
        pipe.zadd(_INDEX[status], {task_id: score})
        mapping = {"status": status, "updated_at": now_ts()}
        mapping.update(fields)
        pipe.hset(k_task(task_id), mapping=mapping)
        if status == T_DONE:
            pipe.zremrangebyrank(DONE_Z, 0, -(DONE_KEEP + 1))
        await pipe.execute()

    async def enqueue(self, refs: Iterable[TaskRef],
                      reset: bool = False) -> int:
        n = 0
        for t in refs:
            n += 1
            now = now_ts()
            key = k_task(t.id)
            # NX on the status field doubles as the dedupe gate
            created = await self.r.hsetnx(key, "status", T_PENDING)
            if created:
                pipe = self.r.pipeline(transaction=True)
                pipe.hset(key, mapping={
                    "kind": t.kind, "ref": t.ref, "attempts": 0,
                    "last_error": "", "run_after": now,
                    "created_at": now, "updated_at": now,
                })
                pipe.zadd(PENDING_Z, {t.id: now})
                await pipe.execute()
                continue
            if not reset:
                continue
            if await self.r.hget(key, "status") == T_RUNNING:
                continue
            await self._move(t.id, T_PENDING, now, attempts=0,
                             last_error="", run_after=now)
        return n

    async def claim(self, task_id: str) -> Optional[Dict[str, Any]]:
        # only one caller gets removed == 1
        removed = await self.r.zrem(PENDING_Z, task_id)
        if removed != 1:
            return None
        await self._move(task_id, T_RUNNING, now_ts())
        h = await self.r.hgetall(k_task(task_id))
        return _row(task_id, h) if h else None

    async def due(self, limit: int = 100) -> List[str]:
        now = now_ts()
        stuck = await self.r.zrangebyscore(
            RUNNING_Z, "-inf", now - STUCK_SECONDS
        )
        for task_id in stuck:
            await self._move(task_id, T_PENDING, now, run_after=now)
        return list(await self.r.zrangebyscore(
            PENDING_Z, "-inf", now, start=0, num=int(limit)
        ))

    async def complete(self, task_id: str) -> None:
        await self._move(task_id, T_DONE, now_ts(), last_error="")

    async def fail(self, task_id: str, error: str) -> str:
        key = k_task(task_id)
        if not await self.r.exists(key):
            return T_DEAD
        attempts = await self.r.hincrby(key, "attempts", 1)
        now = now_ts()
        err = (error or "")[:500]
        if attempts >= self.max_attempts:
            await self._move(task_id, T_DEAD, now, last_error=err)
            return T_DEAD
        run_after = now + retry_delay(attempts, self.retry_base)
        await self._move(task_id, T_PENDING, run_after, last_error=err,
                         run_after=run_after)
        return T_PENDING

    async def summary(self) -> Dict[str, int]:
        pipe = self.r.pipeline(transaction=False)
        for s in STATUSES:
            pipe.zcard(_INDEX[s])
        counts = await pipe.execute()
        return {s: int(c) for s, c in zip(STATUSES, counts)}

    async def recent(self, status: Optional[str] = None,
                     limit: int = 100) -> List[Dict[str, Any]]:
        if status and status not in _INDEX:
            return []
        statuses = [status] if status else list(STATUSES)
        ids: List[str] = []
        for s in statuses:
            ids.extend(await self.r.zrevrange(_INDEX[s], 0, int(limit) - 1))
        if not ids:
            return []
        pipe = self.r.pipeline(transaction=False)
        for task_id in ids:
            pipe.hgetall(k_task(task_id))
        hashes = await pipe.execute()
        rows = [_row(i, h) for i, h in zip(ids, hashes) if h]
        rows.sort(key=lambda x: x["updated_at"], reverse=True)
        return rows[:limit]
