"""Order lifecycle: placing, editing, status changes, cancellation, payment.

Status moves only forward along placed -> preparing -> ready -> completed, or
from placed to cancelled. Every change is committed before the owner's
connections are told about it.
"""
import logging
from decimal import ROUND_FLOOR, Decimal

from sqlalchemy.orm import Session

from . import crud, models
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import STAFF_ROLES, OrderStatus, Role
from .notifier import Notifier, new_order_message, order_update_message

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.placed: frozenset({OrderStatus.preparing, OrderStatus.cancelled}),
    OrderStatus.preparing: frozenset({OrderStatus.ready}),
    OrderStatus.ready: frozenset({OrderStatus.completed}),
    OrderStatus.completed: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

LOYALTY_RATE = Decimal("0.10")


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status: {value!r}") from None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def loyalty_points_for(total_amount) -> int:
    points = (Decimal(total_amount) * LOYALTY_RATE).to_integral_value(rounding=ROUND_FLOOR)
    return int(points)


def price_lines(db: Session, items):
    """Resolve order lines against the menu and compute the total.

    A unit price sent by the client is kept as given; a missing one falls back
    to the live menu price, or the surplus price while the item is on offer.
    """
    if not items:
        raise ValidationError("Order is empty")
    menu = crud.get_menu_items(db, [item["menu_item_id"] for item in items])
    lines = []
    total = Decimal("0")
    for item in items:
        quantity = item.get("quantity", 1)
        if quantity is None or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        menu_item = menu.get(item["menu_item_id"])
        if menu_item is None:
            raise NotFoundError(f"Menu item {item['menu_item_id']} not found")
        price = item.get("price")
        if price is None:
            price = (
                menu_item.surplus_price if menu_item.active_surplus() else menu_item.price
            )
        price = Decimal(price)
        if price < 0:
            raise ValidationError("Price cannot be negative")
        lines.append(
            {"menu_item_id": menu_item.id, "quantity": quantity, "price": price}
        )
        total += price * quantity
    return lines, total


def _load(db: Session, order_id: int) -> models.Order:
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order(db: Session, actor: models.User, order_id: int) -> models.Order:
    order = _load(db, order_id)
    if actor.role not in STAFF_ROLES and order.user_id != actor.id:
        raise ForbiddenError("Not authorized to view this order")
    return order


def list_orders(db: Session, actor: models.User):
    if actor.role in STAFF_ROLES:
        return crud.list_orders(db)
    return crud.list_orders(db, user_id=actor.id)


async def create_order(
    db: Session,
    notifier: Notifier,
    actor: models.User,
    items,
    is_preorder: bool = False,
    pickup_time=None,
    special_instructions=None,
) -> models.Order:
    pickup_time = models.as_utc(pickup_time)
    if pickup_time is not None and pickup_time <= models.utcnow():
        raise ValidationError("Pickup time must be in the future")
    lines, total = price_lines(db, items)
    order = crud.create_order(
        db,
        {
            "user_id": actor.id,
            "total_amount": total,
            "is_preorder": is_preorder,
            "pickup_time": pickup_time,
            "special_instructions": special_instructions,
        },
        lines,
    )
    logger.info("Order %s placed by user %s, total %s", order.id, actor.id, order.total_amount)
    await notifier.send_to_role(db, Role.kitchen, new_order_message(order))
    return order


def edit_order(
    db: Session, actor: models.User, order_id: int, items, special_instructions=None
) -> models.Order:
    order = _load(db, order_id)
    if order.user_id != actor.id and actor.role != Role.admin:
        raise ForbiddenError("Not authorized to edit this order")
    if order.status != OrderStatus.placed:
        raise ConflictError(
            "Cannot edit order that is already being prepared",
            status=order.status.value,
        )
    lines, total = price_lines(db, items)
    order = crud.replace_order_items(db, order, lines, total, special_instructions)
    logger.info("Order %s edited by user %s", order.id, actor.id)
    return order


async def update_status(
    db: Session, notifier: Notifier, actor: models.User, order_id: int, status
) -> models.Order:
    if actor.role not in STAFF_ROLES:
        raise ForbiddenError("Not authorized to update order status")
    target = parse_status(status)
    order = _load(db, order_id)
    if not can_transition(order.status, target):
        raise ConflictError(
            f"Cannot move order from {order.status.value} to {target.value}",
            status=order.status.value,
        )
    return await _apply_status(db, notifier, order, target)


async def cancel_order(
    db: Session, notifier: Notifier, actor: models.User, order_id: int
) -> models.Order:
    order = _load(db, order_id)
    if order.user_id != actor.id and actor.role not in STAFF_ROLES:
        raise ForbiddenError("Not authorized to cancel this order")
    if order.status != OrderStatus.placed:
        raise ConflictError(
            "Only placed orders can be cancelled", status=order.status.value
        )
    return await _apply_status(db, notifier, order, OrderStatus.cancelled)


async def _apply_status(
    db: Session, notifier: Notifier, order: models.Order, target: OrderStatus
) -> models.Order:
    notification = {
        "user_id": order.user_id,
        "title": f"Order #{order.id} {target.value}",
        "message": f"Your order #{order.id} is now {target.value}.",
        "type": models.NotificationType.order,
        "related_item_id": order.id,
    }
    order = crud.set_order_status(db, order, target, notification)
    logger.info("Order %s moved to %s", order.id, target.value)
    await notifier.send_to_user(order.user_id, order_update_message(order))
    return order


def confirm_payment(db: Session, order_id: int):
    """Mark an order paid and award its owner 10% of the total in points.

    Safe to call repeatedly for the same order: points are credited once.
    Returns ``(order, points_awarded)``; ``points_awarded`` is 0 on repeats.
    """
    order = _load(db, order_id)
    if order.status == OrderStatus.cancelled:
        raise ConflictError("Cannot pay for a cancelled order")
    points = loyalty_points_for(order.total_amount)
    accrual, created = crud.record_accrual(db, order, points)
    if not created:
        logger.info("Payment for order %s already confirmed", order.id)
        return crud.get_order(db, order.id), 0
    logger.info("Awarded %s points to user %s for order %s", accrual.points, order.user_id, order.id)
    return crud.get_order(db, order.id), accrual.points
