from __future__ import annotations
from typing import Optional, Dict, Any, List, Iterable
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
from typing import Callable, AsyncContextManager

from ...helpers import now_ts
from ._base import (
    STATUSES, STUCK_SECONDS, T_DEAD, T_PENDING,
    TaskRef, retry_delay,
)


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_FULFILLMENT_TASKS = r"""
-- follow-up work that runs after a payment has been committed (QR issuance)
CREATE TABLE IF NOT EXISTS fulfillment_tasks (
  id          TEXT PRIMARY KEY,             -- '<kind>:<ref>'
  kind        TEXT NOT NULL,
  ref         TEXT NOT NULL,
  status      TEXT NOT NULL,                -- pending | running | done | dead
  attempts    INTEGER NOT NULL DEFAULT 0,
  last_error  TEXT,
  run_after   DOUBLE PRECISION NOT NULL,
  created_at  DOUBLE PRECISION NOT NULL,
  updated_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_TASKS_DUE = r"""
CREATE INDEX IF NOT EXISTS idx_fulfillment_tasks_due
  ON fulfillment_tasks (status, run_after);
"""

SQL_INSERT = r"""
INSERT INTO fulfillment_tasks(
  id, kind, ref, status, attempts, run_after, created_at, updated_at
) VALUES (:id, :kind, :ref, 'pending', 0, :now, :now, :now)
ON CONFLICT (id) DO NOTHING
"""

SQL_INSERT_RESET = r"""
INSERT INTO fulfillment_tasks(
  id, kind, ref, status, attempts, run_after, created_at, updated_at
) VALUES (:id, :kind, :ref, 'pending', 0, :now, :now, :now)
ON CONFLICT (id) DO UPDATE SET
  status='pending', attempts=0, last_error=NULL,
  run_after=EXCLUDED.run_after, updated_at=EXCLUDED.updated_at
WHERE fulfillment_tasks.status <> 'running'
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_FULFILLMENT_TASKS))
    await exec_(text(SQL_CREATE_IDX_TASKS_DUE))


def _row(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "kind": r["kind"],
        "ref": r["ref"],
        "status": r["status"],
        "attempts": int(r["attempts"] or 0),
        "last_error": r["last_error"],
        "run_after": float(r["run_after"]),
        "updated_at": float(r["updated_at"]),
    }


class TaskStore:
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
        max_attempts: int, retry_base_seconds: int,
    ) -> None:
        self.db = db
        self.gated = gated
        self.max_attempts = max_attempts
        self.retry_base = retry_base_seconds

    async def enqueue(self, refs: Iterable[TaskRef],
                      reset: bool = False) -> int:
        now = now_ts()
        params = [{"id": t.id, "kind": t.kind, "ref": t.ref, "now": now}
                  for t in refs]
        if not params:
            return 0
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text(SQL_INSERT_RESET if reset else SQL_INSERT), params
                )
        return len(params)

    async def claim(self, task_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE fulfillment_tasks
                  SET status='running', updated_at=:now
                  WHERE id=:id AND status='pending'
                """), {"id": task_id, "now": now_ts()})
                if res.rowcount != 1:
                    return None
                row = (await self.db.execute(text(
                    "SELECT * FROM fulfillment_tasks WHERE id=:id"
                ), {"id": task_id})).mappings().first()
        return _row(row) if row else None

    async def due(self, limit: int = 100) -> List[str]:
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                # hand stuck runners' work out again
                await self.db.execute(text("""
                  UPDATE fulfillment_tasks
                  SET status='pending', run_after=:now, updated_at=:now
                  WHERE status='running' AND updated_at < :stuck
                """), {"now": now, "stuck": now - STUCK_SECONDS})
                rows = (await self.db.execute(text("""
                  SELECT id FROM fulfillment_tasks
                  WHERE status='pending' AND run_after <= :now
                  ORDER BY run_after ASC LIMIT :lim
                """), {"now": now, "lim": int(limit)})).all()
        return [r[0] for r in rows]

    async def complete(self, task_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  UPDATE fulfillment_tasks
                  SET status='done', last_error=NULL, updated_at=:now
                  WHERE id=:id
                """), {"id": task_id, "now": now_ts()})

    async def fail(self, task_id: str, error: str) -> str:
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                attempts = (await self.db.execute(text(
                    "SELECT attempts FROM fulfillment_tasks WHERE id=:id"
                ), {"id": task_id})).scalar_one_or_none()
                if attempts is None:
                    return T_DEAD
                attempts = int(attempts) + 1
                if attempts >= self.max_attempts:
                    status, run_after = T_DEAD, now
                else:
                    status = T_PENDING
                    run_after = now + retry_delay(attempts, self.retry_base)
                await self.db.execute(text("""
                  UPDATE fulfillment_tasks
                  SET status=:status, attempts=:attempts, last_error=:err,
                      run_after=:run_after, updated_at=:now
                  WHERE id=:id
                """), {
                    "id": task_id, "status": status, "attempts": attempts,
                    "err": (error or "")[:500], "run_after": run_after,
                    "now": now,
                })
        return status

    async def summary(self) -> Dict[str, int]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT status, COUNT(*) FROM fulfillment_tasks
                  GROUP BY status
                """))).all()
        out = {s: 0 for s in STATUSES}
        out.update({r[0]: int(r[1]) for r in rows})
        return out

    async def recent(self, status: Optional[str] = None,
                     limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM fulfillment_tasks"
        params: Dict[str, Any] = {"lim": int(limit)}
        if status:
            sql += " WHERE status=:status"
            params["status"] = status
        sql += " ORDER BY updated_at DESC LIMIT :lim"
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(sql), params)
                        ).mappings().all()
        return [_row(r) for r in rows]
