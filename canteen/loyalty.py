"""Loyalty point balances and reward redemption."""
import logging

from sqlalchemy.orm import Session

from . import crud, models
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def balance(db: Session, user_id: int) -> int:
    points = crud.get_points(db, user_id)
    if points is None:
        raise NotFoundError("User not found")
    return points


def accrue(db: Session, user_id: int, points: int) -> int:
    if not isinstance(points, int) or isinstance(points, bool) or points < 0:
        raise ValidationError("Points must be a non-negative integer")
    new_balance = crud.add_points(db, user_id, points)
    if new_balance is None:
        raise NotFoundError("User not found")
    logger.info("User %s earned %s points, balance %s", user_id, points, new_balance)
    return new_balance


def get_reward(db: Session, reward_id: int) -> models.LoyaltyReward:
    reward = crud.get_reward(db, reward_id)
    if reward is None:
        raise NotFoundError("Reward not found")
    return reward


def redeem(db: Session, user: models.User, reward_id: int):
    """Spend points on a reward. Returns ``(redemption, remaining_points)``."""
    reward = get_reward(db, reward_id)
    if not reward.is_active:
        raise ConflictError("Reward is no longer available")
    redemption = crud.redeem_reward(db, user.id, reward)
    if redemption is None:
        raise ConflictError(
            "Not enough points to redeem this reward",
            required=reward.points_required,
            available=balance(db, user.id),
        )
    remaining = balance(db, user.id)
    logger.info(
        "User %s redeemed reward %s for %s points, %s left",
        user.id,
        reward.id,
        redemption.points_used,
        remaining,
    )
    return redemption, remaining


def history(db: Session, user_id: int):
    return crud.list_redemptions(db, user_id)
