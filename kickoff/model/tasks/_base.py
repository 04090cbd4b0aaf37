from __future__ import annotations
from dataclasses import dataclass

ORDER_QR = "order_qr"
TICKET_QR = "ticket_qr"
KINDS = (ORDER_QR, TICKET_QR)

# task status
T_PENDING = "pending"
T_RUNNING = "running"
T_DONE = "done"
T_DEAD = "dead"
STATUSES = (T_PENDING, T_RUNNING, T_DONE, T_DEAD)

# a task stuck in 'running' this long is handed out again
STUCK_SECONDS = 10 * 60


@dataclass(frozen=True)
class TaskRef:
    kind: str
    ref: str

    @property
    def id(self) -> str:
        return f"{self.kind}:{self.ref}"

    @classmethod
    def parse(cls, task_id: str) -> "TaskRef":
        kind, _, ref = task_id.partition(":")
        if kind not in KINDS or not ref:
            raise ValueError(f"bad task id {task_id!r}")
        return cls(kind=kind, ref=ref)


def retry_delay(attempts: int, base_seconds: int) -> float:
    # 1st failure -> base, 2nd -> 2*base, 3rd -> 4*base ...
    return float(base_seconds) * (2 ** max(0, attempts - 1))
