from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._base import (
    KINDS, ORDER_QR, STATUSES, T_DEAD, T_DONE, T_PENDING, T_RUNNING,
    TICKET_QR, TaskRef, retry_delay,
)
from ._postgres import TaskStore as PgTaskStore, create_schema
from ._redis import TaskStore as RedisTaskStore

Gated = Callable[[], AsyncContextManager[None]]

BACKENDS = ("pg", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *,
              db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Gated = None,
              max_attempts: int = 5,
              retry_base_seconds: int = 30):
    backend = (backend or "pg").lower()
    if backend == "pg":
        if db is None:
            raise RuntimeError("TaskStore(pg) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("TaskStore(pg) requires gated=Gated")
        return PgTaskStore(db=db, gated=gated, max_attempts=max_attempts,
                           retry_base_seconds=retry_base_seconds)
    if backend == "redis":
        if r is None:
            raise RuntimeError("TaskStore(redis) requires r=redis.Redis")
        return RedisTaskStore(r=r, max_attempts=max_attempts,
                              retry_base_seconds=retry_base_seconds)
    raise RuntimeError(f"unknown TASKS_BACKEND {backend!r}")


__all__ = [
    "BACKENDS", "KINDS", "ORDER_QR", "TICKET_QR", "STATUSES",
    "T_PENDING", "T_RUNNING", "T_DONE", "T_DEAD",
    "TaskRef", "retry_delay", "new_store", "create_schema",
    "PgTaskStore", "RedisTaskStore",
]
