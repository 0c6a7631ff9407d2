"""
Delivery timeline shown to the customer.

Each milestone resolves either from the persisted order status (Resolved) or,
while the status has not got that far, from the time elapsed since the order
was placed (Heuristic). Resolved always wins: a shipped order shows
"Processing confirmed" as done even a minute after checkout.

A cancelled order keeps what it showed when it was cancelled: the clock
stops at `updated_at`, so progress never goes backwards.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Union, TYPE_CHECKING

from .helpers import to_iso
from .model.order import OrderStatus

if TYPE_CHECKING:
    from .model.order import Order


@dataclass(frozen=True)
class MilestoneSpec:
    label: str
    description: str
    offset: timedelta
    # first order status that proves this milestone was reached
    reached_by: OrderStatus


MILESTONES = (
    MilestoneSpec("Ordered", "Order placed",
                  timedelta(0), OrderStatus.PENDING),
    MilestoneSpec("Processing started", "Order is being prepared",
                  timedelta(minutes=2), OrderStatus.PROCESSING),
    MilestoneSpec("Processing confirmed", "Slot confirmed",
                  timedelta(minutes=4, seconds=30), OrderStatus.SHIPPED),
    MilestoneSpec("Fulfilled", "Order delivered",
                  timedelta(minutes=7), OrderStatus.DELIVERED),
)

# position of each status along the fulfilment path
_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
}


@dataclass(frozen=True)
class Resolved:
    status: OrderStatus


@dataclass(frozen=True)
class Heuristic:
    elapsed: timedelta


Resolution = Union[Resolved, Heuristic]


@dataclass(frozen=True)
class TrackingMilestone:
    label: str
    description: str
    due_at: float
    completed: bool
    source: str  # 'resolved' | 'heuristic' | 'none'

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "description": self.description,
            "due_at": to_iso(self.due_at),
            "completed": self.completed,
            "source": self.source,
        }


def resolve(status: OrderStatus, created_at: float, now: float,
            milestone: MilestoneSpec) -> Optional[Resolution]:
    """
    How (and whether) a milestone counts as reached. Returns None when
    neither the explicit status nor elapsed time reaches it.
    """
    # only pending orders can be cancelled, so a cancelled order ranks as
    # pending; the caller stops the clock at the cancellation
    rank = _RANK.get(status, _RANK[OrderStatus.PENDING])
    if rank >= _RANK[milestone.reached_by]:
        return Resolved(status)
    elapsed = timedelta(seconds=max(0.0, now - created_at))
    if elapsed >= milestone.offset:
        return Heuristic(elapsed)
    return None


def project(order: "Order", now: float) -> List[TrackingMilestone]:
    status = OrderStatus(order.status)
    clock = now
    if status is OrderStatus.CANCELLED:
        # stop the clock at the last update, the cancellation
        stopped = (order.updated_at if order.updated_at is not None
                   else order.created_at)
        clock = min(now, stopped)
    out = []
    for m in MILESTONES:
        r = resolve(status, order.created_at, clock, m)
        if isinstance(r, Resolved):
            source = "resolved"
        elif isinstance(r, Heuristic):
            source = "heuristic"
        else:
            source = "none"
        out.append(TrackingMilestone(
            label=m.label,
            description=m.description,
            due_at=order.created_at + m.offset.total_seconds(),
            completed=r is not None,
            source=source,
        ))
    return out


def progress(milestones: List[TrackingMilestone]) -> int:
    if not milestones:
        return 0
    done = sum(1 for m in milestones if m.completed)
    return round(done * 100 / len(milestones))
