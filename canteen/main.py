import asyncio
import json
import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, Response
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import auth, crud, errors, loyalty, models, orders, schemas, surplus
from .db import Base, SessionLocal, engine, get_db
from .errors import ConflictError, ForbiddenError, NotFoundError, UpstreamError
from .notifier import Notifier
from .payments import PaymentGateway

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = float(os.getenv("NOTIFICATION_SWEEP_SECONDS", "300"))

app = FastAPI(title="Canteen")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
errors.install(app)

app.state.notifier = Notifier()
app.state.gateway = PaymentGateway()


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


async def sweep_expired_notifications(interval: float):
    while True:
        await asyncio.sleep(interval)
        db = SessionLocal()
        try:
            deleted = crud.delete_expired_notifications(db, models.utcnow())
        except SQLAlchemyError:
            logger.exception("Notification sweep failed")
            continue
        finally:
            db.close()
        if deleted:
            logger.info("Deleted %d expired notifications", deleted)


@app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    if os.getenv("SEED_DEMO_DATA", "1") == "1":
        db = SessionLocal()
        try:
            crud.seed_demo_data(db)
        finally:
            db.close()
    app.state.sweeper = asyncio.create_task(sweep_expired_notifications(SWEEP_INTERVAL))


@app.on_event("shutdown")
async def on_shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()


@app.get("/")
def index():
    return {"service": "Canteen API", "status": "ok"}


# Auth


@app.post("/api/register", response_model=schemas.UserOut, status_code=201)
def register(user_in: schemas.UserCreate, db: Session = Depends(get_db)):
    if crud.get_user_by_username(db, user_in.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    return crud.create_user(
        db, user_in.username, user_in.password, user_in.name, user_in.email
    )


@app.post("/api/admin/users", response_model=schemas.UserOut, status_code=201)
def create_staff(
    user_in: schemas.StaffCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    if crud.get_user_by_username(db, user_in.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    return crud.create_user(
        db, user_in.username, user_in.password, user_in.name, user_in.email, user_in.role
    )


@app.post("/api/login", response_model=schemas.Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)
):
    user = crud.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = auth.create_access_token({"sub": str(user.id)})
    return {"access_token": token, "token_type": "bearer"}


@app.get("/api/user", response_model=schemas.UserOut)
def get_me(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


@app.patch("/api/user/profile", response_model=schemas.UserOut)
def update_profile(
    profile: schemas.ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    if not profile.name and not profile.email:
        raise HTTPException(
            status_code=400, detail="At least one field (name or email) is required"
        )
    return crud.update_user_profile(db, current_user, profile.model_dump())


# Menu


@app.get("/api/categories", response_model=list[schemas.CategoryOut])
def get_categories(db: Session = Depends(get_db)):
    return crud.list_categories(db)


@app.post("/api/categories", response_model=schemas.CategoryOut, status_code=201)
def create_category(
    category_in: schemas.CategoryCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    if crud.get_category_by_name(db, category_in.name):
        raise ConflictError("Category already exists")
    return crud.create_category(db, category_in.name)


def get_menu_item_or_404(db: Session, item_id: int) -> models.MenuItem:
    item = crud.get_menu_item(db, item_id)
    if not item:
        raise NotFoundError("Menu item not found")
    return item


def check_category(db: Session, category_id):
    if category_id is not None and not crud.get_category(db, category_id):
        raise NotFoundError("Category not found")


@app.get("/api/menu-items", response_model=list[schemas.MenuItemOut])
def get_menu(db: Session = Depends(get_db)):
    return crud.list_menu(db)


@app.get("/api/menu-items/{item_id}", response_model=schemas.MenuItemOut)
def get_menu_item(item_id: int, db: Session = Depends(get_db)):
    return get_menu_item_or_404(db, item_id)


@app.post("/api/menu-items", response_model=schemas.MenuItemOut, status_code=201)
def create_menu_item(
    menu_in: schemas.MenuItemCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    check_category(db, menu_in.category_id)
    return crud.create_menu_item(db, menu_in.model_dump())


@app.patch("/api/menu-items/{item_id}", response_model=schemas.MenuItemOut)
def update_menu_item(
    item_id: int,
    menu_in: schemas.MenuItemUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    item = get_menu_item_or_404(db, item_id)
    check_category(db, menu_in.category_id)
    return crud.update_menu_item(db, item, menu_in.model_dump(exclude_unset=True))


@app.delete("/api/menu-items/{item_id}", status_code=204)
def delete_menu_item(
    item_id: int,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    item = get_menu_item_or_404(db, item_id)
    if crud.menu_item_has_orders(db, item_id):
        raise ConflictError("Menu item appears in orders; mark it unavailable instead")
    crud.delete_menu_item(db, item)
    return Response(status_code=204)


# Reviews


@app.post("/api/reviews", response_model=schemas.ReviewOut, status_code=201)
def create_review(
    review_in: schemas.ReviewCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    get_menu_item_or_404(db, review_in.menu_item_id)
    return crud.create_review(
        db, current_user.id, review_in.menu_item_id, review_in.rating, review_in.comment
    )


@app.get("/api/menu-items/{item_id}/reviews", response_model=list[schemas.ReviewOut])
def get_reviews(item_id: int, db: Session = Depends(get_db)):
    get_menu_item_or_404(db, item_id)
    return crud.list_reviews(db, item_id)


# Orders


def order_to_out(order: models.Order) -> schemas.OrderOut:
    return schemas.OrderOut(
        id=order.id,
        user_id=order.user_id,
        status=order.status,
        total_amount=order.total_amount,
        created_at=order.created_at,
        is_preorder=order.is_preorder,
        pickup_time=order.pickup_time,
        special_instructions=order.special_instructions,
        payment_status=order.payment_status,
        items=[
            schemas.OrderItemOut(
                id=item.id,
                menu_item_id=item.menu_item_id,
                name=item.menu_item.name,
                quantity=item.quantity,
                price=item.price,
            )
            for item in order.items
        ],
    )


@app.get("/api/orders", response_model=list[schemas.OrderOut])
def list_orders(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return [order_to_out(order) for order in orders.list_orders(db, current_user)]


@app.get("/api/orders/{order_id}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return order_to_out(orders.get_order(db, current_user, order_id))


@app.post("/api/orders", response_model=schemas.OrderOut, status_code=201)
async def create_order(
    order_in: schemas.OrderCreate,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    order = await orders.create_order(
        db,
        notifier,
        current_user,
        [item.model_dump() for item in order_in.items],
        is_preorder=order_in.is_preorder,
        pickup_time=order_in.pickup_time,
        special_instructions=order_in.special_instructions,
    )
    return order_to_out(order)


@app.patch("/api/orders/{order_id}", response_model=schemas.OrderOut)
def edit_order(
    order_id: int,
    order_in: schemas.OrderUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    order = orders.edit_order(
        db,
        current_user,
        order_id,
        [item.model_dump() for item in order_in.items],
        special_instructions=order_in.special_instructions,
    )
    return order_to_out(order)


@app.patch("/api/orders/{order_id}/status", response_model=schemas.OrderOut)
async def update_order_status(
    order_id: int,
    status_in: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    order = await orders.update_status(
        db, notifier, current_user, order_id, status_in.status
    )
    return order_to_out(order)


@app.post("/api/orders/{order_id}/cancel", response_model=schemas.OrderOut)
async def cancel_order(
    order_id: int,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    order = await orders.cancel_order(db, notifier, current_user, order_id)
    return order_to_out(order)


# Payments


@app.post("/api/payments/create", response_model=schemas.PaymentCreated)
async def create_payment(
    payment_in: schemas.PaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: models.User = Depends(auth.get_current_user),
):
    order = orders.get_order(db, current_user, payment_in.order_id)
    if order.status == models.OrderStatus.cancelled:
        raise ConflictError("Cannot pay for a cancelled order")
    if order.payment_status == models.PaymentStatus.paid:
        raise ConflictError("Order is already paid")
    base = str(request.base_url).rstrip("/")
    payment = await gateway.initiate(
        order.id,
        order.total_amount,
        current_user.id,
        redirect_url=f"{base}/payment-complete",
        callback_url=f"{base}/api/payments/callback",
    )
    return schemas.PaymentCreated(amount=order.total_amount, **payment)


async def verify_transaction(db: Session, gateway: PaymentGateway, transaction_id: str):
    order_id = gateway.order_id_from(transaction_id)
    result = await gateway.check_status(transaction_id)
    if not result["success"]:
        logger.warning("Payment verification rejected for %s", transaction_id)
        raise UpstreamError("Payment verification failed")
    if result["state"] != "COMPLETED":
        raise ConflictError("Payment not completed", state=result["state"])
    return orders.confirm_payment(db, order_id)


@app.post("/api/payments/verify", response_model=schemas.PaymentVerified)
async def verify_payment(
    payment_in: schemas.PaymentVerify,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: models.User = Depends(auth.get_current_user),
):
    order_id = gateway.order_id_from(payment_in.transaction_id)
    orders.get_order(db, current_user, order_id)
    order, points = await verify_transaction(db, gateway, payment_in.transaction_id)
    return schemas.PaymentVerified(
        success=True,
        order_id=order.id,
        payment_status=order.payment_status,
        points_awarded=points,
        loyalty_points=loyalty.balance(db, order.user_id),
    )


@app.get("/api/payments/callback")
async def payment_callback(
    transactionId: str = "",
    gateway: PaymentGateway = Depends(get_gateway),
):
    # Redirect only: the order is marked paid and points credited by the
    # authenticated /api/payments/verify call.
    try:
        gateway.order_id_from(transactionId)
        result = await gateway.check_status(transactionId)
    except errors.CanteenError as exc:
        logger.warning("Payment callback for %s failed: %s", transactionId, exc.message)
        return RedirectResponse("/payment-failed", status_code=303)
    if result["success"] and result["state"] == "COMPLETED":
        return RedirectResponse("/payment-success", status_code=303)
    return RedirectResponse("/payment-failed", status_code=303)


# Loyalty


@app.get("/api/loyalty/points", response_model=schemas.PointsOut)
def get_points(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_student),
):
    return {"points": loyalty.balance(db, current_user.id)}


@app.get("/api/loyalty/rewards", response_model=list[schemas.RewardOut])
def get_rewards(db: Session = Depends(get_db)):
    return crud.list_rewards(db)


@app.get("/api/loyalty/rewards/{reward_id}", response_model=schemas.RewardOut)
def get_reward(reward_id: int, db: Session = Depends(get_db)):
    return loyalty.get_reward(db, reward_id)


@app.post("/api/loyalty/redeem", response_model=schemas.RedeemResponse, status_code=201)
def redeem_reward(
    redeem_in: schemas.RedeemRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_student),
):
    redemption, remaining = loyalty.redeem(db, current_user, redeem_in.reward_id)
    return schemas.RedeemResponse(
        redemption=schemas.RedemptionOut.model_validate(redemption),
        remaining_points=remaining,
    )


@app.get("/api/loyalty/redemptions", response_model=list[schemas.RedemptionOut])
def get_redemptions(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_student),
):
    return loyalty.history(db, current_user.id)


@app.post("/api/admin/loyalty/rewards", response_model=schemas.RewardOut, status_code=201)
def create_reward(
    reward_in: schemas.RewardCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    return crud.create_reward(db, reward_in.model_dump())


@app.patch("/api/admin/loyalty/rewards/{reward_id}", response_model=schemas.RewardOut)
def update_reward(
    reward_id: int,
    reward_in: schemas.RewardUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    reward = loyalty.get_reward(db, reward_id)
    return crud.update_reward(db, reward, reward_in.model_dump(exclude_unset=True))


# NGO partners and surplus food


def get_ngo_or_404(db: Session, ngo_id: int) -> models.NgoPartner:
    ngo = crud.get_ngo(db, ngo_id)
    if not ngo:
        raise NotFoundError("NGO partner not found")
    return ngo


@app.get("/api/ngo-partners", response_model=list[schemas.NgoPartnerOut])
def get_ngo_partners(db: Session = Depends(get_db)):
    return crud.list_ngos(db)


@app.get("/api/ngo-partners/{ngo_id}", response_model=schemas.NgoPartnerOut)
def get_ngo_partner(ngo_id: int, db: Session = Depends(get_db)):
    return get_ngo_or_404(db, ngo_id)


@app.post("/api/ngo-partners", response_model=schemas.NgoPartnerOut, status_code=201)
def create_ngo_partner(
    ngo_in: schemas.NgoPartnerCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    return crud.create_ngo(db, ngo_in.model_dump())


@app.patch("/api/ngo-partners/{ngo_id}", response_model=schemas.NgoPartnerOut)
def update_ngo_partner(
    ngo_id: int,
    ngo_in: schemas.NgoPartnerUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    ngo = get_ngo_or_404(db, ngo_id)
    return crud.update_ngo(db, ngo, ngo_in.model_dump(exclude_unset=True))


@app.get("/api/surplus-items", response_model=list[schemas.MenuItemOut])
def get_surplus_items(db: Session = Depends(get_db)):
    return surplus.list_surplus_items(db)


@app.post("/api/menu-items/{item_id}/surplus", response_model=schemas.MenuItemOut)
async def mark_surplus(
    item_id: int,
    surplus_in: schemas.SurplusMark,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    return await surplus.mark_surplus(
        db,
        notifier,
        current_user,
        item_id,
        surplus_in.surplus_price,
        surplus_in.surplus_expiry_time,
        surplus_in.surplus_quantity,
    )


@app.post("/api/surplus-donations", response_model=schemas.DonationOut, status_code=201)
async def create_donation(
    donation_in: schemas.DonationCreate,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    return await surplus.create_donation(
        db,
        notifier,
        current_user,
        donation_in.ngo_id,
        donation_in.menu_item_id,
        donation_in.quantity,
        donation_in.notes,
    )


@app.get("/api/surplus-donations/ngo/{ngo_id}", response_model=list[schemas.DonationOut])
def get_ngo_donations(
    ngo_id: int,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.get_current_user),
):
    return surplus.list_donations_for_ngo(db, ngo_id)


@app.patch("/api/surplus-donations/{donation_id}/status", response_model=schemas.DonationOut)
async def update_donation_status(
    donation_id: int,
    status_in: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    return await surplus.update_donation_status(
        db, notifier, current_user, donation_id, status_in.status
    )


# Notifications


@app.get("/api/notifications", response_model=list[schemas.NotificationOut])
def get_notifications(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return crud.list_notifications(db, current_user.id, models.utcnow())


@app.patch("/api/notifications/{notification_id}/read", response_model=schemas.NotificationOut)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    notification = crud.get_notification(db, notification_id)
    if not notification:
        raise NotFoundError("Notification not found")
    if notification.user_id != current_user.id:
        raise ForbiddenError("Not your notification")
    return crud.mark_notification_read(db, notification)


@app.get("/api/admin/stats", response_model=schemas.AdminStats)
def admin_stats(
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    return crud.admin_stats(db, models.utcnow())


# Live updates


def authenticate_socket(token: str):
    db = SessionLocal()
    try:
        return auth.user_from_token(db, token or "")
    finally:
        db.close()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    notifier: Notifier = websocket.app.state.notifier
    await websocket.accept()
    user_id = None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "ERROR", "message": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                continue
            if data.get("type") == "AUTH":
                user = authenticate_socket(data.get("token"))
                if user is None:
                    await websocket.send_json({"type": "AUTH_FAILED"})
                    continue
                if user_id is not None and user_id != user.id:
                    notifier.unregister(user_id, websocket)
                user_id = user.id
                notifier.register(user_id, websocket)
                await websocket.send_json({"type": "AUTH_SUCCESS", "userId": user_id})
            elif data.get("type") == "PING":
                await websocket.send_json({"type": "PONG"})
    except WebSocketDisconnect:
        pass
    finally:
        if user_id is not None:
            notifier.unregister(user_id, websocket)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
