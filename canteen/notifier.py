"""Live push of order, surplus and notification events to connected clients.

Connections are anything with an awaitable ``send_json``; in the app they are
Starlette WebSockets registered after the client's AUTH message. Delivery is
best effort: nothing is acknowledged or retried, and durable copies live in
the notifications table.
"""
import logging
from collections import defaultdict

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from . import crud, models

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self):
        self._connections = defaultdict(set)

    def register(self, user_id: int, connection):
        self._connections[user_id].add(connection)
        logger.info(
            "User %s connected (%d live connections)",
            user_id,
            len(self._connections[user_id]),
        )

    def unregister(self, user_id: int, connection):
        connections = self._connections.get(user_id)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            del self._connections[user_id]
        logger.info("User %s disconnected", user_id)

    def connected_user_ids(self) -> list[int]:
        return list(self._connections)

    def connection_count(self, user_id: int) -> int:
        return len(self._connections.get(user_id, ()))

    async def send_to_user(self, user_id: int, payload: dict) -> int:
        """Push ``payload`` to every connection of one user.

        Returns the number of connections it reached.
        """
        connections = list(self._connections.get(user_id, ()))
        if not connections:
            return 0
        message = jsonable_encoder(payload)
        delivered = 0
        for connection in connections:
            if await self._deliver(user_id, connection, message):
                delivered += 1
        return delivered

    async def send_to_users(self, user_ids, payload: dict) -> int:
        delivered = 0
        for user_id in user_ids:
            delivered += await self.send_to_user(user_id, payload)
        return delivered

    async def send_to_role(self, db: Session, role: models.Role, payload: dict) -> int:
        user_ids = crud.user_ids_with_role(db, role, among=self.connected_user_ids())
        return await self.send_to_users(user_ids, payload)

    async def send_to_all(self, payload: dict) -> int:
        return await self.send_to_users(self.connected_user_ids(), payload)

    async def _deliver(self, user_id: int, connection, message) -> bool:
        try:
            await connection.send_json(message)
        except Exception as exc:
            logger.warning("Dropping connection for user %s: %s", user_id, exc)
            self.unregister(user_id, connection)
            return False
        return True


def _item_lines(order: models.Order):
    return [
        {"name": item.menu_item.name, "quantity": item.quantity} for item in order.items
    ]


def order_update_message(order: models.Order) -> dict:
    return {
        "type": "ORDER_UPDATE",
        "order": {
            "id": order.id,
            "status": order.status.value,
            "items": _item_lines(order),
        },
    }


def new_order_message(order: models.Order) -> dict:
    return {
        "type": "NEW_ORDER",
        "order": {
            "id": order.id,
            "userId": order.user_id,
            "customerName": order.user.name,
            "totalAmount": order.total_amount,
            "items": _item_lines(order),
        },
    }


def surplus_alert_message(item: models.MenuItem) -> dict:
    return {
        "type": "SURPLUS_FOOD_ALERT",
        "menuItem": {
            "id": item.id,
            "name": item.name,
            "price": item.price,
            "surplusPrice": item.surplus_price,
            "image": item.image,
            "surplusExpiryTime": item.surplus_expiry_time,
        },
    }


def notification_message(notification: dict) -> dict:
    return {"type": "NOTIFICATION", "notification": notification}
