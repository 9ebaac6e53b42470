"""Surplus food offers and NGO donations."""
import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from . import crud, models
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import STAFF_ROLES, DonationStatus, NotificationType, Role
from .notifier import Notifier, notification_message, surplus_alert_message

logger = logging.getLogger(__name__)

DONATION_TRANSITIONS = {
    DonationStatus.scheduled: frozenset({DonationStatus.in_progress}),
    DonationStatus.in_progress: frozenset({DonationStatus.completed}),
    DonationStatus.completed: frozenset(),
}


def _require_staff(actor: models.User, action: str):
    if actor.role not in STAFF_ROLES:
        raise ForbiddenError(f"Not authorized to {action}")


def _notifications_for(user_ids, **fields):
    return [dict(fields, user_id=user_id) for user_id in user_ids]


async def mark_surplus(
    db: Session,
    notifier: Notifier,
    actor: models.User,
    item_id: int,
    surplus_price,
    expiry,
    quantity: int,
) -> models.MenuItem:
    _require_staff(actor, "mark items as surplus")
    try:
        surplus_price = Decimal(surplus_price)
    except (InvalidOperation, TypeError):
        raise ValidationError("Surplus price must be a number") from None
    if surplus_price <= 0:
        raise ValidationError("Surplus price must be greater than 0")
    expiry = models.as_utc(expiry)
    if expiry is None or expiry <= models.utcnow():
        raise ValidationError("Surplus expiry time must be in the future")
    if quantity is None or quantity < 1:
        raise ValidationError("Surplus quantity must be at least 1")
    item = crud.get_menu_item(db, item_id)
    if item is None:
        raise NotFoundError("Menu item not found")

    students = crud.user_ids_with_role(db, Role.student)
    notifications = _notifications_for(
        students,
        title="Surplus Food Alert",
        message=(
            f"{item.name} is now available at a discounted price of "
            f"₹{surplus_price}! Limited quantity available."
        ),
        type=NotificationType.surplus,
        related_item_id=item.id,
        expires_at=expiry,
    )
    item = crud.mark_item_surplus(db, item, surplus_price, expiry, quantity, notifications)
    logger.info(
        "Menu item %s marked surplus: %s units at %s until %s",
        item.id,
        quantity,
        item.surplus_price,
        expiry,
    )
    await notifier.send_to_all(surplus_alert_message(item))
    return item


def list_surplus_items(db: Session):
    """Items currently on offer, soonest to expire first."""
    return crud.list_surplus_items(db, models.utcnow())


async def create_donation(
    db: Session,
    notifier: Notifier,
    actor: models.User,
    ngo_id: int,
    menu_item_id: int,
    quantity: int,
    notes=None,
) -> models.SurplusDonation:
    _require_staff(actor, "create donations")
    if quantity is None or quantity < 1:
        raise ValidationError("Donation quantity must be at least 1")
    item = crud.get_menu_item(db, menu_item_id)
    if item is None:
        raise NotFoundError("Menu item not found")
    if crud.get_ngo(db, ngo_id) is None:
        raise NotFoundError("NGO partner not found")
    if not item.is_surplus:
        raise ConflictError("Only surplus items can be donated")

    item_name = item.name
    kitchen = crud.user_ids_with_role(db, Role.kitchen)
    fields = {
        "title": "New Surplus Donation",
        "message": (
            f"A new donation has been scheduled. Please prepare {quantity} "
            f"portions of {item_name}."
        ),
        "type": NotificationType.general,
        "related_item_id": menu_item_id,
    }
    donation = crud.create_donation(
        db, ngo_id, menu_item_id, quantity, notes, _notifications_for(kitchen, **fields)
    )
    if donation is None:
        available = crud.get_menu_item(db, menu_item_id).surplus_quantity
        raise ConflictError(
            "Not enough surplus stock for this donation",
            requested=quantity,
            available=available,
        )
    logger.info(
        "Donation %s scheduled: %s x item %s for NGO %s",
        donation.id,
        quantity,
        menu_item_id,
        ngo_id,
    )
    await notifier.send_to_users(kitchen, notification_message(fields))
    return donation


def list_donations_for_ngo(db: Session, ngo_id: int):
    if crud.get_ngo(db, ngo_id) is None:
        raise NotFoundError("NGO partner not found")
    return crud.list_donations_for_ngo(db, ngo_id)


async def update_donation_status(
    db: Session, notifier: Notifier, actor: models.User, donation_id: int, status
) -> models.SurplusDonation:
    _require_staff(actor, "update donation status")
    try:
        target = DonationStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid status: {status!r}") from None
    donation = crud.get_donation(db, donation_id)
    if donation is None:
        raise NotFoundError("Donation not found")
    if target not in DONATION_TRANSITIONS[donation.status]:
        raise ConflictError(
            f"Cannot move donation from {donation.status.value} to {target.value}",
            status=donation.status.value,
        )

    admins = crud.user_ids_with_role(db, Role.admin)
    fields = {
        "title": "Donation Status Update",
        "message": f"Donation #{donation.id} status has been updated to {target.value}.",
        "type": NotificationType.general,
        "related_item_id": donation.id,
    }
    donation = crud.set_donation_status(
        db, donation, target, _notifications_for(admins, **fields)
    )
    logger.info("Donation %s moved to %s", donation.id, target.value)
    await notifier.send_to_users(admins, notification_message(fields))
    return donation
