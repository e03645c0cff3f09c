"""
order_scheduler.py
==================
Time-driven order lifecycle tasks.

Each task is an independent loop: run one pass, sleep its interval, repeat.
A pass opens a fresh session, fetches every qualifying order in one query,
mutates them in memory and commits the orders together with the
notifications created for them. Real-time pushes go out only after that
commit and are best-effort.

Tasks:
------
| task                      | every  | condition                                         | transition                      |
|---------------------------|--------|---------------------------------------------------|---------------------------------|
| pending-order-cancel      | 5 min  | Pending, older than 30 local minutes              | -> Cancelled                    |
| ready-order-cancel        | 5 min  | ReadyForDelivery, no driver, older than 30 min    | -> Cancelled                    |
| delivered-order-complete  | 1 hour | Delivered, older than 8 hours                     | -> Completed (COD Unpaid->Paid) |
| payment-timeout           | 5 min  | payment Pending, older than 15 min                | payment Failed, -> Cancelled    |

A failing pass is logged and the loop carries on with its next interval;
tasks never share state beyond the database.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Callable, List, Optional

import models
from clock import Clock
from config import settings
from database import SessionLocal
from notifier import NotificationSink, restaurant_group
from repositories import OrderRepository
from schemas import OrderStatus, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

PENDING_CANCELLED_MESSAGE = "Order #{order_id} was cancelled because the restaurant did not confirm it within 30 minutes."
NO_DRIVER_CANCELLED_MESSAGE = "Order #{order_id} was cancelled because no delivery driver accepted it within 30 minutes."
AUTO_COMPLETED_MESSAGE = "Order #{order_id} was automatically marked as completed."


@dataclass
class PushMessage:
    """A real-time message to send once the pass has committed. Exactly one of user_id / group is set."""
    message: str
    user_id: Optional[int] = None
    group: Optional[str] = None


def default_clock() -> Clock:
    return Clock(settings.LOCAL_UTC_OFFSET_HOURS)


# ─────────────────────────── Passes ───────────────────────────

def cancel_stale_pending_orders(repo: OrderRepository, clock: Clock,
                                timeout: Optional[timedelta] = None) -> List[PushMessage]:
    """Pending orders the restaurant never confirmed are cancelled; the customer is notified."""
    timeout = timeout or timedelta(minutes=settings.PENDING_ORDER_TIMEOUT_MINUTES)
    cutoff = clock.local_cutoff(timeout)

    orders = repo.query_orders(
        models.Order.status == OrderStatus.pending.value,
        models.Order.order_date < cutoff,
    )
    if not orders:
        return []

    notifications = []
    pushes = []
    for order in orders:
        order.status = OrderStatus.cancelled.value
        message = PENDING_CANCELLED_MESSAGE.format(order_id=order.order_id)
        notifications.append(models.Notification(user_id=order.user_id, message=message, created_at=clock.now()))
        pushes.append(PushMessage(message, user_id=order.user_id))
        logger.info(f"Auto-cancelled order {order.order_id}: no restaurant confirmation within {timeout}")

    repo.commit(orders, notifications)
    return pushes


def cancel_unassigned_ready_orders(repo: OrderRepository, clock: Clock,
                                   timeout: Optional[timedelta] = None) -> List[PushMessage]:
    """
    ReadyForDelivery orders no driver picked up are cancelled. The customer
    and the restaurant owner get a notification; the restaurant's group gets
    the push.
    """
    timeout = timeout or timedelta(minutes=settings.READY_ORDER_TIMEOUT_MINUTES)
    cutoff = clock.local_cutoff(timeout)

    orders = repo.query_orders(
        models.Order.status == OrderStatus.ready_for_delivery.value,
        models.Order.delivery_person_id.is_(None),
        models.Order.order_date < cutoff,
    )
    if not orders:
        return []

    notifications = []
    pushes = []
    for order in orders:
        order.status = OrderStatus.cancelled.value
        message = NO_DRIVER_CANCELLED_MESSAGE.format(order_id=order.order_id)
        notifications.append(models.Notification(user_id=order.user_id, message=message, created_at=clock.now()))

        owner_id = repo.restaurant_owner_id(order.restaurant_id)
        if owner_id is not None:
            notifications.append(models.Notification(user_id=owner_id, message=message, created_at=clock.now()))
        else:
            logger.warning(f"Restaurant {order.restaurant_id} has no owner to notify for order {order.order_id}")

        pushes.append(PushMessage(message, user_id=order.user_id))
        pushes.append(PushMessage(message, group=restaurant_group(order.restaurant_id)))
        logger.info(f"Auto-cancelled order {order.order_id}: no delivery person within {timeout}")

    repo.commit(orders, notifications)
    return pushes


def complete_delivered_orders(repo: OrderRepository, clock: Clock,
                              after: Optional[timedelta] = None) -> List[PushMessage]:
    """Delivered orders nobody confirmed are completed; COD orders are marked paid."""
    after = after or timedelta(hours=settings.DELIVERED_ORDER_COMPLETE_HOURS)
    cutoff = clock.local_cutoff(after)

    orders = repo.query_orders(
        models.Order.status == OrderStatus.delivered.value,
        models.Order.order_date < cutoff,
    )
    if not orders:
        logger.info("No orders to auto-complete at this time")
        return []

    logger.info(f"Found {len(orders)} orders to auto-complete")
    notifications = []
    pushes = []
    for order in orders:
        order.status = OrderStatus.completed.value
        if order.payment_method == PaymentMethod.cod.value and order.payment_status == PaymentStatus.unpaid.value:
            order.payment_status = PaymentStatus.paid.value

        message = AUTO_COMPLETED_MESSAGE.format(order_id=order.order_id)
        for recipient in (order.user_id, order.delivery_person_id):
            if recipient:
                notifications.append(models.Notification(user_id=recipient, message=message, created_at=clock.now()))
                pushes.append(PushMessage(message, user_id=recipient))
        logger.info(f"Auto-completed order {order.order_id}")

    repo.commit(orders, notifications)
    return pushes


def fail_timed_out_payments(repo: OrderRepository, clock: Clock,
                            timeout: Optional[timedelta] = None) -> List[PushMessage]:
    """Online payments still pending after the timeout fail, and the order is cancelled with them."""
    timeout = timeout or timedelta(minutes=settings.PAYMENT_TIMEOUT_MINUTES)
    cutoff = clock.local_cutoff(timeout)

    orders = repo.query_orders(
        models.Order.payment_status == PaymentStatus.pending.value,
        models.Order.status != OrderStatus.completed.value,
        models.Order.order_date < cutoff,
    )
    if not orders:
        return []

    for order in orders:
        order.payment_status = PaymentStatus.failed.value
        order.status = OrderStatus.cancelled.value
        logger.info(f"Order {order.order_id} cancelled: payment not received within {timeout}")

    repo.commit(orders, [])
    return []


# ─────────────────────────── Loop ───────────────────────────

class RecurringTask:
    """
    One scheduler loop. Passes of the same task never overlap: the next one
    starts `interval` seconds after the previous one finished.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        pass_fn: Callable[[OrderRepository, Clock], List[PushMessage]],
        notifier: NotificationSink,
        session_factory: Callable = SessionLocal,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.interval = interval
        self.pass_fn = pass_fn
        self.notifier = notifier
        self.session_factory = session_factory
        self.clock = clock or default_clock()

    def _execute_pass(self) -> List[PushMessage]:
        db = self.session_factory()
        try:
            return self.pass_fn(OrderRepository(db), self.clock)
        finally:
            db.close()

    async def _push(self, pushes: List[PushMessage]) -> None:
        for push in pushes:
            try:
                if push.group is not None:
                    await self.notifier.push_to_group(push.group, push.message)
                else:
                    await self.notifier.push_to_user(push.user_id, push.message)
            except Exception as e:
                logger.error(f"{self.name}: failed to push notification: {e}")

    async def run_pass(self) -> List[PushMessage]:
        """
        Run one pass; database errors propagate, push errors do not.
        A pass already in flight when the stop signal arrives still sends its
        pushes, since they describe changes that are already committed.
        """
        pushes = await asyncio.to_thread(self._execute_pass)
        await self._push(pushes)
        return pushes

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(f"{self.name} is starting.")
        while not stop_event.is_set():
            try:
                await self.run_pass()
            except Exception:
                logger.exception(f"Error occurred during {self.name} pass")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{self.name} is stopping.")


def build_default_tasks(notifier: NotificationSink, session_factory: Callable = SessionLocal,
                        clock: Optional[Clock] = None) -> List[RecurringTask]:
    clock = clock or default_clock()
    task = partial(RecurringTask, notifier=notifier, session_factory=session_factory, clock=clock)
    return [
        task("pending-order-cancel", settings.PENDING_ORDER_CHECK_INTERVAL_SECONDS, cancel_stale_pending_orders),
        task("ready-order-cancel", settings.READY_ORDER_CHECK_INTERVAL_SECONDS, cancel_unassigned_ready_orders),
        task("delivered-order-complete", settings.DELIVERED_ORDER_CHECK_INTERVAL_SECONDS, complete_delivered_orders),
        task("payment-timeout", settings.PAYMENT_TIMEOUT_CHECK_INTERVAL_SECONDS, fail_timed_out_payments),
    ]


class OrderLifecycleScheduler:

    def __init__(self, tasks: List[RecurringTask]):
        self.tasks = tasks
        self._stop_event: Optional[asyncio.Event] = None
        self._runners: List[asyncio.Task] = []

    def start(self) -> None:
        self._stop_event = asyncio.Event()
        self._runners = [asyncio.create_task(t.run(self._stop_event), name=t.name) for t in self.tasks]
        logger.info(f"Order lifecycle scheduler started with {len(self._runners)} tasks.")

    async def stop(self) -> None:
        """Signal every loop and wait for it; a pass in flight finishes its commit first."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        await asyncio.gather(*self._runners, return_exceptions=True)
        self._runners = []
        logger.info("Order lifecycle scheduler stopped.")
