"""PhonePe-style payment gateway client.

Without a merchant id the gateway runs in demo mode and every payment
succeeds locally. Otherwise requests are signed with the salt key and sent
over HTTP with a bounded timeout; any transport failure is an UpstreamError.
"""
import base64
import hashlib
import json
import logging
import os
import re
import time
from decimal import Decimal

import httpx

from .errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

DEMO_MERCHANT = "DEMO_MERCHANT"
PAY_PATH = "/pg/v1/pay"
TRANSACTION_RE = re.compile(r"^order_(\d+)_\d+$")


class PaymentGateway:
    def __init__(
        self,
        merchant_id=None,
        salt_key=None,
        salt_index=None,
        production=None,
        timeout=None,
        transport=None,
    ):
        self.merchant_id = merchant_id or os.getenv("PHONEPE_MERCHANT_ID", DEMO_MERCHANT)
        self.salt_key = salt_key or os.getenv("PHONEPE_SALT_KEY", "DEMO_SALT_KEY")
        self.salt_index = salt_index or os.getenv("PHONEPE_SALT_INDEX", "1")
        if production is None:
            production = os.getenv("PHONEPE_PRODUCTION", "0") == "1"
        self.production = production
        self.timeout = timeout or float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))
        self.transport = transport
        host = "api" if production else "api-preprod"
        base = "hermes" if production else "pg-sandbox"
        self.base_url = f"https://{host}.phonepe.com/apis/{base}"

    @property
    def demo(self) -> bool:
        return not self.production and self.merchant_id == DEMO_MERCHANT

    def sign(self, payload: str, path: str) -> str:
        digest = hashlib.sha256((payload + path + self.salt_key).encode()).hexdigest()
        return f"{digest}###{self.salt_index}"

    @staticmethod
    def transaction_id_for(order_id: int) -> str:
        return f"order_{order_id}_{int(time.time() * 1000)}"

    @staticmethod
    def order_id_from(transaction_id: str) -> int:
        match = TRANSACTION_RE.match(transaction_id or "")
        if not match:
            raise ValidationError("Invalid transaction ID format")
        return int(match.group(1))

    async def initiate(
        self, order_id: int, amount: Decimal, user_id: int, redirect_url: str, callback_url: str
    ) -> dict:
        transaction_id = self.transaction_id_for(order_id)
        request = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": transaction_id,
            "amount": int(Decimal(amount) * 100),
            "merchantUserId": str(user_id),
            "redirectUrl": redirect_url,
            "callbackUrl": callback_url,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        if self.demo:
            logger.info("[demo] payment initiated for order %s", order_id)
            return {
                "transaction_id": transaction_id,
                "redirect_url": f"/demo-payment?amount={amount}&transactionId={transaction_id}",
            }

        payload = base64.b64encode(json.dumps(request).encode()).decode()
        data = await self._request(
            "POST",
            PAY_PATH,
            json={"request": payload},
            headers={"X-VERIFY": self.sign(payload, PAY_PATH)},
        )
        if not data.get("success"):
            raise UpstreamError(f"Payment initiation failed: {data.get('message')}")
        info = (data.get("data") or {}).get("instrumentResponse") or {}
        return {
            "transaction_id": transaction_id,
            "redirect_url": (info.get("redirectInfo") or {}).get("url", ""),
        }

    async def check_status(self, transaction_id: str) -> dict:
        """Return ``{"success", "state", "payment_id"}`` for a transaction."""
        if self.demo:
            logger.info("[demo] payment status checked for %s", transaction_id)
            return {
                "success": True,
                "state": "COMPLETED",
                "payment_id": f"DEMO_TX_{transaction_id}",
            }

        path = f"/pg/v1/status/{self.merchant_id}/{transaction_id}"
        data = await self._request(
            "GET",
            path,
            headers={"X-VERIFY": self.sign("", path), "X-MERCHANT-ID": self.merchant_id},
        )
        details = data.get("data") or {}
        return {
            "success": bool(data.get("success")),
            "state": details.get("state", "UNKNOWN"),
            "payment_id": details.get("transactionId"),
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException:
            logger.warning("Payment gateway timed out on %s %s", method, path)
            raise UpstreamError("Payment gateway timed out") from None
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("Payment gateway request failed")
            raise UpstreamError("Payment gateway request failed") from exc
