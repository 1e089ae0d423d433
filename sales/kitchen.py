"""Kitchen display projection.

The board is a pure function of the active orders and the current time. The
per-display checklist (which lines a cook has ticked) lives only in a
`KitchenDisplaySession` and is never written to the database.
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta

from django.utils import timezone

from sales.models import Order

Status = Order.Status

URGENT_AFTER = {
    Status.PENDING: timedelta(minutes=5),
    Status.PREPARING: timedelta(minutes=20),
}
BOARD_STATUSES = (Status.PENDING, Status.PREPARING, Status.READY)
LEAVES_BOARD = {Status.COMPLETED, Status.CANCELLED}


@dataclass(frozen=True)
class KitchenLine:
    index: int
    name: str
    quantity: int
    notes: str = ""


@dataclass(frozen=True)
class KitchenOrder:
    id: object
    order_number: str
    status: str
    type: str
    created_at: object
    table_number: str = ""
    customer_name: str = ""
    notes: str = ""
    lines: tuple = ()

    @classmethod
    def from_order(cls, order):
        if isinstance(order, cls):
            return order
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            type=order.type,
            created_at=order.created_at,
            table_number=order.table_number,
            customer_name=order.customer_name,
            notes=order.notes,
            lines=tuple(
                KitchenLine(index=index, name=item.product_name, quantity=item.quantity, notes=item.notes)
                for index, item in enumerate(order.items.all())
            ),
        )


@dataclass(frozen=True)
class KitchenTicket:
    order: KitchenOrder
    elapsed_seconds: int
    urgent: bool

    @property
    def elapsed_label(self):
        return elapsed_label(self.elapsed_seconds)


@dataclass(frozen=True)
class KitchenBoard:
    generated_at: object
    pending: tuple = ()
    preparing: tuple = ()
    ready: tuple = ()

    def column(self, status):
        return {
            Status.PENDING: self.pending,
            Status.PREPARING: self.preparing,
            Status.READY: self.ready,
        }[status]

    @property
    def tickets(self):
        return self.pending + self.preparing + self.ready

    @property
    def urgent_count(self):
        return sum(1 for ticket in self.tickets if ticket.urgent)


def elapsed_label(seconds):
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"


def is_urgent(status, created_at, now):
    threshold = URGENT_AFTER.get(status)
    if threshold is None:
        return False
    return now - created_at > threshold


def project_kitchen_board(orders, now=None):
    """Group active orders into PENDING / PREPARING / READY columns.

    PENDING and READY keep the incoming order (newest first from the feed);
    PREPARING is oldest first so the longest wait is at the top.
    """
    now = now or timezone.now()
    columns = {status: [] for status in BOARD_STATUSES}

    for order in orders:
        kitchen_order = KitchenOrder.from_order(order)
        if kitchen_order.status not in columns:
            continue
        elapsed = max(0, int((now - kitchen_order.created_at).total_seconds()))
        columns[kitchen_order.status].append(
            KitchenTicket(
                order=kitchen_order,
                elapsed_seconds=elapsed,
                urgent=is_urgent(kitchen_order.status, kitchen_order.created_at, now),
            )
        )

    columns[Status.PREPARING].sort(key=lambda ticket: ticket.order.created_at)
    return KitchenBoard(
        generated_at=now,
        pending=tuple(columns[Status.PENDING]),
        preparing=tuple(columns[Status.PREPARING]),
        ready=tuple(columns[Status.READY]),
    )


@dataclass
class KitchenDisplaySession:
    """Working memory of one kitchen screen between polls."""

    orders: dict = field(default_factory=dict)
    checklist: dict = field(default_factory=dict)

    @classmethod
    def start(cls, orders):
        session = cls()
        session.refresh(orders)
        return session

    def refresh(self, orders):
        """Replace the order set with a fresh poll; ticks survive for orders still on the board."""
        self.orders = {}
        for order in orders:
            kitchen_order = KitchenOrder.from_order(order)
            if kitchen_order.status in BOARD_STATUSES:
                self.orders[kitchen_order.id] = kitchen_order
        self.checklist = {key: value for key, value in self.checklist.items() if key[0] in self.orders}

    def board(self, now=None):
        return project_kitchen_board(self.orders.values(), now=now)

    def toggle_line(self, order_id, line_index):
        key = (order_id, line_index)
        self.checklist[key] = not self.checklist.get(key, False)
        return self.checklist[key]

    def is_checked(self, order_id, line_index):
        return self.checklist.get((order_id, line_index), False)

    def checked_count(self, order_id):
        return sum(1 for (checked_order, _), value in self.checklist.items() if checked_order == order_id and value)

    def change_status(self, order_id, status, submit):
        """Apply a status change locally, then confirm it with `submit(order_id, status)`.

        If `submit` raises, the order set is restored from the snapshot taken
        before the change and the error propagates to the caller.
        """
        snapshot = dict(self.orders)
        current = self.orders.get(order_id)
        if current is not None:
            if status in LEAVES_BOARD:
                self.orders.pop(order_id)
            else:
                self.orders[order_id] = replace(current, status=status)

        try:
            result = submit(order_id, status)
        except Exception:
            self.orders = snapshot
            raise

        if status in LEAVES_BOARD:
            self.checklist = {key: value for key, value in self.checklist.items() if key[0] != order_id}
        elif result is not None and getattr(result, "status", None) in BOARD_STATUSES:
            self.orders[order_id] = KitchenOrder.from_order(result)
        return result
