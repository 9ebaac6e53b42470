import logging
import os
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import auth, models

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@contextmanager
def atomic(db: Session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


# Users


def get_user(db: Session, user_id: int):
    return db.get(models.User, user_id)


def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()


def create_user(
    db: Session,
    username: str,
    password: str,
    name: str,
    email: str,
    role: models.Role = models.Role.student,
):
    user = models.User(
        username=username,
        password_hash=auth.get_password_hash(password),
        name=name,
        email=email,
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def authenticate_user(db: Session, username: str, password: str):
    user = get_user_by_username(db, username)
    if not user:
        return None
    if not auth.verify_password(password, user.password_hash):
        return None
    return user


def update_user_profile(db: Session, user: models.User, data: dict):
    for key in ["name", "email"]:
        if data.get(key):
            setattr(user, key, data[key])
    db.commit()
    db.refresh(user)
    return user


def user_ids_with_role(db: Session, role: models.Role, among=None) -> list[int]:
    query = db.query(models.User.id).filter(models.User.role == role)
    if among is not None:
        among = list(among)
        if not among:
            return []
        query = query.filter(models.User.id.in_(among))
    return [row.id for row in query.order_by(models.User.id)]


# Categories and menu


def list_categories(db: Session):
    return db.query(models.Category).order_by(models.Category.name).all()


def get_category(db: Session, category_id: int):
    return db.get(models.Category, category_id)


def get_category_by_name(db: Session, name: str):
    return db.query(models.Category).filter(models.Category.name == name).first()


def create_category(db: Session, name: str):
    category = models.Category(name=name)
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def list_menu(db: Session):
    return (
        db.query(models.MenuItem)
        .order_by(models.MenuItem.category_id, models.MenuItem.name)
        .all()
    )


def get_menu_item(db: Session, item_id: int):
    return db.get(models.MenuItem, item_id)


def get_menu_items(db: Session, item_ids) -> dict:
    ids = set(item_ids)
    if not ids:
        return {}
    items = db.query(models.MenuItem).filter(models.MenuItem.id.in_(ids)).all()
    return {item.id: item for item in items}


MENU_FIELDS = [
    "name",
    "description",
    "price",
    "image",
    "category_id",
    "is_available",
    "nutritional_info",
    "allergens",
]


def create_menu_item(db: Session, item_data: dict):
    item = models.MenuItem(**{k: item_data[k] for k in MENU_FIELDS if k in item_data})
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def update_menu_item(db: Session, item: models.MenuItem, item_data: dict):
    for key in MENU_FIELDS:
        if key in item_data and item_data[key] is not None:
            setattr(item, key, item_data[key])
    db.commit()
    db.refresh(item)
    return item


def menu_item_has_orders(db: Session, item_id: int) -> bool:
    return (
        db.query(models.OrderItem.id)
        .filter(models.OrderItem.menu_item_id == item_id)
        .first()
        is not None
    )


def delete_menu_item(db: Session, item: models.MenuItem):
    db.delete(item)
    db.commit()


# Reviews


def list_reviews(db: Session, menu_item_id: int):
    return (
        db.query(models.Review)
        .filter(models.Review.menu_item_id == menu_item_id)
        .order_by(models.Review.created_at.desc(), models.Review.id.desc())
        .all()
    )


def create_review(db: Session, user_id: int, menu_item_id: int, rating: int, comment):
    with atomic(db):
        review = models.Review(
            user_id=user_id, menu_item_id=menu_item_id, rating=rating, comment=comment
        )
        db.add(review)
        db.flush()
        count, average = (
            db.query(func.count(models.Review.id), func.avg(models.Review.rating))
            .filter(models.Review.menu_item_id == menu_item_id)
            .one()
        )
        item = get_menu_item(db, menu_item_id)
        item.review_count = count
        item.rating = Decimal(str(average)).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
    db.refresh(review)
    return review


# Orders


def get_order(db: Session, order_id: int):
    return db.get(models.Order, order_id)


def list_orders(db: Session, user_id=None):
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()


def _order_items(lines):
    return [
        models.OrderItem(
            menu_item_id=line["menu_item_id"],
            quantity=line["quantity"],
            price=money(line["price"]),
        )
        for line in lines
    ]


def create_order(db: Session, order_data: dict, lines):
    """Persist an order and all its items in one transaction."""
    with atomic(db):
        order = models.Order(
            user_id=order_data["user_id"],
            status=models.OrderStatus.placed,
            total_amount=money(order_data["total_amount"]),
            is_preorder=order_data.get("is_preorder", False),
            pickup_time=order_data.get("pickup_time"),
            special_instructions=order_data.get("special_instructions"),
        )
        order.items = _order_items(lines)
        db.add(order)
    db.refresh(order)
    return order


def replace_order_items(
    db: Session, order: models.Order, lines, total_amount, special_instructions=None
):
    with atomic(db):
        order.items = _order_items(lines)
        order.total_amount = money(total_amount)
        if special_instructions is not None:
            order.special_instructions = special_instructions
    db.refresh(order)
    return order


def set_order_status(
    db: Session, order: models.Order, status: models.OrderStatus, notification=None
):
    with atomic(db):
        order.status = status
        if notification:
            db.add(models.Notification(**notification))
    db.refresh(order)
    return order


def get_accrual(db: Session, order_id: int):
    return (
        db.query(models.LoyaltyAccrual)
        .filter(models.LoyaltyAccrual.order_id == order_id)
        .first()
    )


def record_accrual(db: Session, order: models.Order, points: int):
    """Mark ``order`` paid and credit its owner once.

    Returns ``(accrual, created)``. A second call for the same order returns
    the existing ledger row with ``created=False`` and changes nothing.
    """
    existing = get_accrual(db, order.id)
    if existing:
        return existing, False
    try:
        with atomic(db):
            accrual = models.LoyaltyAccrual(
                order_id=order.id, user_id=order.user_id, points=points
            )
            db.add(accrual)
            db.flush()
            _add_points(db, order.user_id, points)
            order.payment_status = models.PaymentStatus.paid
    except IntegrityError:
        return get_accrual(db, order.id), False
    db.refresh(accrual)
    return accrual, True


def count_orders_since(db: Session, since):
    return (
        db.query(func.count(models.Order.id), func.coalesce(func.sum(models.Order.total_amount), 0))
        .filter(models.Order.created_at >= since)
        .one()
    )


# Loyalty


def list_rewards(db: Session, active_only: bool = True):
    query = db.query(models.LoyaltyReward)
    if active_only:
        query = query.filter(models.LoyaltyReward.is_active.is_(True))
    return query.order_by(models.LoyaltyReward.points_required).all()


def get_reward(db: Session, reward_id: int):
    return db.get(models.LoyaltyReward, reward_id)


REWARD_FIELDS = [
    "name",
    "description",
    "points_required",
    "reward_type",
    "reward_value",
    "is_active",
]


def create_reward(db: Session, data: dict):
    reward = models.LoyaltyReward(**{k: data[k] for k in REWARD_FIELDS if k in data})
    db.add(reward)
    db.commit()
    db.refresh(reward)
    return reward


def update_reward(db: Session, reward: models.LoyaltyReward, data: dict):
    for key in REWARD_FIELDS:
        if key in data and data[key] is not None:
            setattr(reward, key, data[key])
    db.commit()
    db.refresh(reward)
    return reward


def get_points(db: Session, user_id: int):
    return (
        db.query(models.User.loyalty_points).filter(models.User.id == user_id).scalar()
    )


def _add_points(db: Session, user_id: int, points: int) -> bool:
    result = db.execute(
        update(models.User)
        .where(models.User.id == user_id)
        .values(loyalty_points=models.User.loyalty_points + points)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def add_points(db: Session, user_id: int, points: int):
    """Credit ``points`` and return the new balance, or None for an unknown user."""
    with atomic(db):
        found = _add_points(db, user_id, points)
    if not found:
        return None
    return get_points(db, user_id)


def redeem_reward(db: Session, user_id: int, reward: models.LoyaltyReward):
    """Debit the reward cost and record a pending redemption.

    The debit only applies while the balance covers it, so two racing
    redemptions cannot both spend the same points. Returns None when the
    balance is too low.
    """
    with atomic(db):
        result = db.execute(
            update(models.User)
            .where(
                models.User.id == user_id,
                models.User.loyalty_points >= reward.points_required,
            )
            .values(loyalty_points=models.User.loyalty_points - reward.points_required)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        redemption = models.RewardRedemption(
            user_id=user_id,
            reward_id=reward.id,
            points_used=reward.points_required,
            status=models.RedemptionStatus.pending,
        )
        db.add(redemption)
    db.refresh(redemption)
    return redemption


def list_redemptions(db: Session, user_id: int):
    return (
        db.query(models.RewardRedemption)
        .filter(models.RewardRedemption.user_id == user_id)
        .order_by(
            models.RewardRedemption.redeemed_at.desc(),
            models.RewardRedemption.id.desc(),
        )
        .all()
    )


# NGO partners and surplus


def list_ngos(db: Session):
    return db.query(models.NgoPartner).order_by(models.NgoPartner.name).all()


def get_ngo(db: Session, ngo_id: int):
    return db.get(models.NgoPartner, ngo_id)


NGO_FIELDS = [
    "name",
    "description",
    "contact_name",
    "contact_email",
    "contact_phone",
    "address",
    "is_active",
]


def create_ngo(db: Session, data: dict):
    ngo = models.NgoPartner(**{k: data[k] for k in NGO_FIELDS if k in data})
    db.add(ngo)
    db.commit()
    db.refresh(ngo)
    return ngo


def update_ngo(db: Session, ngo: models.NgoPartner, data: dict):
    for key in NGO_FIELDS:
        if key in data and data[key] is not None:
            setattr(ngo, key, data[key])
    db.commit()
    db.refresh(ngo)
    return ngo


def mark_item_surplus(
    db: Session, item: models.MenuItem, price, expiry, quantity: int, notifications
):
    with atomic(db):
        item.is_surplus = True
        item.surplus_price = money(price)
        item.surplus_expiry_time = expiry
        item.surplus_quantity = quantity
        db.add_all(models.Notification(**n) for n in notifications)
    db.refresh(item)
    return item


def list_surplus_items(db: Session, now):
    return (
        db.query(models.MenuItem)
        .filter(
            models.MenuItem.is_surplus.is_(True),
            models.MenuItem.surplus_expiry_time > now,
            models.MenuItem.surplus_quantity > 0,
        )
        .order_by(models.MenuItem.surplus_expiry_time, models.MenuItem.id)
        .all()
    )


def create_donation(
    db: Session, ngo_id: int, menu_item_id: int, quantity: int, notes, notifications
):
    """Take ``quantity`` off the item's surplus stock and record the donation.

    Stock decrement, donation row and notifications commit together. When the
    stock hits zero the surplus flag is cleared in the same statement. Returns
    None, with nothing written, if the item is not surplus or is short.
    """
    with atomic(db):
        result = db.execute(
            update(models.MenuItem)
            .where(
                models.MenuItem.id == menu_item_id,
                models.MenuItem.is_surplus.is_(True),
                models.MenuItem.surplus_quantity >= quantity,
            )
            .values(
                surplus_quantity=models.MenuItem.surplus_quantity - quantity,
                is_surplus=models.MenuItem.surplus_quantity > quantity,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        donation = models.SurplusDonation(
            ngo_id=ngo_id,
            menu_item_id=menu_item_id,
            quantity=quantity,
            notes=notes,
            status=models.DonationStatus.scheduled,
        )
        db.add(donation)
        db.add_all(models.Notification(**n) for n in notifications)
    db.refresh(donation)
    return donation


def get_donation(db: Session, donation_id: int):
    return db.get(models.SurplusDonation, donation_id)


def list_donations_for_ngo(db: Session, ngo_id: int):
    return (
        db.query(models.SurplusDonation)
        .filter(models.SurplusDonation.ngo_id == ngo_id)
        .order_by(models.SurplusDonation.donation_date.desc(), models.SurplusDonation.id.desc())
        .all()
    )


def set_donation_status(
    db: Session, donation: models.SurplusDonation, status, notifications
):
    with atomic(db):
        donation.status = status
        db.add_all(models.Notification(**n) for n in notifications)
    db.refresh(donation)
    return donation


# Notifications


def list_notifications(db: Session, user_id: int, now):
    return (
        db.query(models.Notification)
        .filter(
            models.Notification.user_id == user_id,
            or_(
                models.Notification.expires_at.is_(None),
                models.Notification.expires_at > now,
            ),
        )
        .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
        .all()
    )


def get_notification(db: Session, notification_id: int):
    return db.get(models.Notification, notification_id)


def mark_notification_read(db: Session, notification: models.Notification):
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def delete_expired_notifications(db: Session, now) -> int:
    with atomic(db):
        deleted = (
            db.query(models.Notification)
            .filter(
                models.Notification.expires_at.is_not(None),
                models.Notification.expires_at <= now,
            )
            .delete(synchronize_session=False)
        )
    return deleted


# Dashboard


def admin_stats(db: Session, now):
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    today_orders, today_revenue = count_orders_since(db, day_start)
    active = (
        db.query(func.count(models.Order.id))
        .filter(
            models.Order.status.in_(
                [
                    models.OrderStatus.placed,
                    models.OrderStatus.preparing,
                    models.OrderStatus.ready,
                ]
            )
        )
        .scalar()
    )
    students = (
        db.query(func.count(models.User.id))
        .filter(models.User.role == models.Role.student)
        .scalar()
    )
    total_items = db.query(func.count(models.MenuItem.id)).scalar()
    available = (
        db.query(func.count(models.MenuItem.id))
        .filter(models.MenuItem.is_available.is_(True))
        .scalar()
    )
    return {
        "today_orders": today_orders,
        "today_revenue": money(today_revenue),
        "active_orders": active,
        "total_customers": students,
        "available_items": available,
        "total_items": total_items,
        "surplus_items": len(list_surplus_items(db, now)),
    }


# Demo data


def seed_demo_data(db: Session):
    if db.query(models.User).count() > 0:
        return
    for username, name, role in [
        ("student", "Demo Student", models.Role.student),
        ("admin", "Canteen Admin", models.Role.admin),
        ("kitchen", "Kitchen Staff", models.Role.kitchen),
    ]:
        password = os.getenv(f"DEMO_{role.value.upper()}_PASSWORD", f"{role.value}123")
        create_user(db, username, password, name, f"{username}@canteen.local", role)

    categories = {name: create_category(db, name) for name in ["Breakfast", "Meals", "Snacks", "Beverages"]}
    samples = [
        ("Masala Dosa", "Crisp rice crepe with potato masala and chutney.", "60.00", "Breakfast", ["gluten"]),
        ("Idli Sambar", "Steamed rice cakes with lentil sambar.", "40.00", "Breakfast", []),
        ("Veg Thali", "Rice, two curries, dal, roti and salad.", "120.00", "Meals", ["gluten", "dairy"]),
        ("Paneer Butter Masala", "Cottage cheese in a tomato butter gravy.", "110.00", "Meals", ["dairy"]),
        ("Samosa", "Fried pastry with spiced potato filling.", "15.00", "Snacks", ["gluten"]),
        ("Veg Sandwich", "Grilled sandwich with vegetables and cheese.", "50.00", "Snacks", ["gluten", "dairy"]),
        ("Masala Chai", "Spiced milk tea.", "15.00", "Beverages", ["dairy"]),
        ("Cold Coffee", "Chilled coffee blended with milk.", "70.00", "Beverages", ["dairy"]),
    ]
    for name, description, price, category, allergens in samples:
        create_menu_item(
            db,
            {
                "name": name,
                "description": description,
                "price": Decimal(price),
                "category_id": categories[category].id,
                "allergens": allergens,
            },
        )

    for name, points, reward_type, value in [
        ("Free Masala Chai", 50, models.RewardType.free_item, "Masala Chai"),
        ("10% Off Next Order", 100, models.RewardType.discount, "10"),
        ("Free Veg Thali", 250, models.RewardType.free_item, "Veg Thali"),
    ]:
        create_reward(
            db,
            {
                "name": name,
                "description": f"Redeem {points} points for {name.lower()}.",
                "points_required": points,
                "reward_type": reward_type,
                "reward_value": value,
            },
        )

    for name, contact, address in [
        ("Food For All", "Priya Sharma", "12 Market Road"),
        ("Annapurna Trust", "Rahul Verma", "4 Temple Street"),
    ]:
        create_ngo(
            db,
            {
                "name": name,
                "description": "Collects surplus food for shelters.",
                "contact_name": contact,
                "contact_email": f"contact@{name.lower().replace(' ', '')}.org",
                "contact_phone": "+910000000000",
                "address": address,
            },
        )
    logger.info("Seeded demo users, menu, rewards and NGO partners")
