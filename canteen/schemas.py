from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from .models import (
    DonationStatus,
    NotificationType,
    OrderStatus,
    PaymentStatus,
    RedemptionStatus,
    RewardType,
    Role,
)


class Token(BaseModel):
    access_token: str
    token_type: str


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=80)
    password: str = Field(min_length=6, max_length=128)
    name: str = Field(min_length=1, max_length=120)
    email: EmailStr


class StaffCreate(UserCreate):
    role: Role = Role.kitchen


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[EmailStr] = None


class UserOut(BaseModel):
    id: int
    username: str
    name: str
    email: str
    role: Role
    loyalty_points: int

    class Config:
        from_attributes = True


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)


class CategoryOut(CategoryCreate):
    id: int

    class Config:
        from_attributes = True


class MenuItemBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    price: Decimal = Field(ge=0)
    image: str = ""
    category_id: int
    is_available: bool = True
    nutritional_info: Optional[Dict[str, Any]] = None
    allergens: Optional[List[str]] = None


class MenuItemCreate(MenuItemBase):
    pass


class MenuItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    image: Optional[str] = None
    category_id: Optional[int] = None
    is_available: Optional[bool] = None
    nutritional_info: Optional[Dict[str, Any]] = None
    allergens: Optional[List[str]] = None


class MenuItemOut(MenuItemBase):
    id: int
    rating: Decimal
    review_count: int
    is_surplus: bool
    surplus_price: Optional[Decimal] = None
    surplus_expiry_time: Optional[datetime] = None
    surplus_quantity: int
    category: Optional[CategoryOut] = None

    class Config:
        from_attributes = True


class OrderItemIn(BaseModel):
    menu_item_id: int
    quantity: int = Field(default=1, ge=1)
    price: Optional[Decimal] = Field(default=None, ge=0)


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    is_preorder: bool = False
    pickup_time: Optional[datetime] = None
    special_instructions: Optional[str] = Field(default=None, max_length=500)


class OrderUpdate(BaseModel):
    items: List[OrderItemIn]
    special_instructions: Optional[str] = Field(default=None, max_length=500)


class StatusUpdate(BaseModel):
    status: str


class OrderItemOut(BaseModel):
    id: int
    menu_item_id: int
    name: str
    quantity: int
    price: Decimal


class OrderOut(BaseModel):
    id: int
    user_id: int
    status: OrderStatus
    total_amount: Decimal
    created_at: datetime
    is_preorder: bool
    pickup_time: Optional[datetime] = None
    special_instructions: Optional[str] = None
    payment_status: PaymentStatus
    items: List[OrderItemOut]


class ReviewCreate(BaseModel):
    menu_item_id: int
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)


class ReviewOut(ReviewCreate):
    id: int
    user_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class RewardBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    points_required: int = Field(ge=0)
    reward_type: RewardType
    reward_value: str
    is_active: bool = True


class RewardCreate(RewardBase):
    pass


class RewardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    points_required: Optional[int] = Field(default=None, ge=0)
    reward_type: Optional[RewardType] = None
    reward_value: Optional[str] = None
    is_active: Optional[bool] = None


class RewardOut(RewardBase):
    id: int

    class Config:
        from_attributes = True


class RedeemRequest(BaseModel):
    reward_id: int


class RedemptionOut(BaseModel):
    id: int
    user_id: int
    reward_id: int
    points_used: int
    status: RedemptionStatus
    redeemed_at: datetime

    class Config:
        from_attributes = True


class RedeemResponse(BaseModel):
    redemption: RedemptionOut
    remaining_points: int


class PointsOut(BaseModel):
    points: int


class NgoPartnerBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    contact_name: str
    contact_email: EmailStr
    contact_phone: str
    address: str
    is_active: bool = True


class NgoPartnerCreate(NgoPartnerBase):
    pass


class NgoPartnerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None


class NgoPartnerOut(NgoPartnerBase):
    id: int
    created_at: datetime

    class Config:
        from_attributes = True


class SurplusMark(BaseModel):
    surplus_price: Decimal
    surplus_expiry_time: datetime
    surplus_quantity: int


class DonationCreate(BaseModel):
    ngo_id: int
    menu_item_id: int
    quantity: int
    notes: Optional[str] = Field(default=None, max_length=1000)


class DonationOut(BaseModel):
    id: int
    ngo_id: int
    menu_item_id: int
    quantity: int
    donation_date: datetime
    status: DonationStatus
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class NotificationOut(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    type: NotificationType
    is_read: bool
    created_at: datetime
    related_item_id: Optional[int] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    order_id: int


class PaymentCreated(BaseModel):
    transaction_id: str
    redirect_url: str
    amount: Decimal


class PaymentVerify(BaseModel):
    transaction_id: str


class PaymentVerified(BaseModel):
    success: bool
    order_id: int
    payment_status: PaymentStatus
    points_awarded: int
    loyalty_points: int


class AdminStats(BaseModel):
    today_orders: int
    today_revenue: Decimal
    active_orders: int
    total_customers: int
    available_items: int
    total_items: int
    surplus_items: int
