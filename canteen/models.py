import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    student = "student"
    admin = "admin"
    kitchen = "kitchen"


STAFF_ROLES = frozenset({Role.admin, Role.kitchen})


class OrderStatus(str, enum.Enum):
    placed = "placed"
    preparing = "preparing"
    ready = "ready"
    completed = "completed"
    cancelled = "cancelled"


class PaymentStatus(str, enum.Enum):
    unpaid = "unpaid"
    paid = "paid"


class RewardType(str, enum.Enum):
    discount = "discount"
    free_item = "free_item"
    other = "other"


class RedemptionStatus(str, enum.Enum):
    pending = "pending"
    applied = "applied"
    expired = "expired"


class DonationStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"


class NotificationType(str, enum.Enum):
    general = "general"
    surplus = "surplus"
    order = "order"
    reward = "reward"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(80), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(120), nullable=False)
    email = Column(String(320), nullable=False)
    role = Column(Enum(Role), default=Role.student, nullable=False)
    loyalty_points = Column(Integer, default=0, nullable=False)

    orders = relationship("Order", back_populates="user")
    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )
    redemptions = relationship(
        "RewardRedemption", back_populates="user", cascade="all, delete-orphan"
    )


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(80), unique=True, nullable=False)


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(500), nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False)
    image = Column(String(500), nullable=False, default="")
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    rating = Column(Numeric(3, 1), default=Decimal("0"), nullable=False)
    review_count = Column(Integer, default=0, nullable=False)
    nutritional_info = Column(JSON, nullable=True)
    allergens = Column(JSON, nullable=True)

    is_surplus = Column(Boolean, default=False, nullable=False)
    surplus_price = Column(Numeric(10, 2), nullable=True)
    surplus_expiry_time = Column(DateTime, nullable=True)
    surplus_quantity = Column(Integer, default=0, nullable=False)

    category = relationship("Category")

    def active_surplus(self, now=None) -> bool:
        now = now or utcnow()
        return bool(
            self.is_surplus
            and self.surplus_quantity > 0
            and self.surplus_expiry_time is not None
            and self.surplus_expiry_time > now
        )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Enum(OrderStatus), default=OrderStatus.placed, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    is_preorder = Column(Boolean, default=False, nullable=False)
    pickup_time = Column(DateTime, nullable=True)
    special_instructions = Column(Text, nullable=True)
    payment_status = Column(
        Enum(PaymentStatus), default=PaymentStatus.unpaid, nullable=False
    )

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    menu_item_id = Column(
        Integer, ForeignKey("menu_items.id"), nullable=False, index=True
    )
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class LoyaltyReward(Base):
    __tablename__ = "loyalty_rewards"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(500), nullable=False, default="")
    points_required = Column(Integer, nullable=False)
    reward_type = Column(Enum(RewardType), nullable=False)
    reward_value = Column(String(120), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class RewardRedemption(Base):
    __tablename__ = "reward_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reward_id = Column(Integer, ForeignKey("loyalty_rewards.id"), nullable=False)
    redeemed_at = Column(DateTime, default=utcnow, nullable=False)
    points_used = Column(Integer, nullable=False)
    status = Column(
        Enum(RedemptionStatus), default=RedemptionStatus.pending, nullable=False
    )

    user = relationship("User", back_populates="redemptions")
    reward = relationship("LoyaltyReward")


class LoyaltyAccrual(Base):
    """Points credited for one paid order. ``order_id`` is unique."""

    __tablename__ = "loyalty_accruals"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    points = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class NgoPartner(Base):
    __tablename__ = "ngo_partners"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(500), nullable=True)
    contact_name = Column(String(120), nullable=False)
    contact_email = Column(String(320), nullable=False)
    contact_phone = Column(String(40), nullable=False)
    address = Column(String(500), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class SurplusDonation(Base):
    __tablename__ = "surplus_donations"

    id = Column(Integer, primary_key=True, index=True)
    ngo_id = Column(Integer, ForeignKey("ngo_partners.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    donation_date = Column(DateTime, default=utcnow, nullable=False)
    status = Column(
        Enum(DonationStatus), default=DonationStatus.scheduled, nullable=False
    )
    notes = Column(Text, nullable=True)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(
        Enum(NotificationType), default=NotificationType.general, nullable=False
    )
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    related_item_id = Column(Integer, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="notifications")
