import hashlib
from decimal import Decimal

import httpx
import pytest

from canteen.errors import UpstreamError, ValidationError
from canteen.payments import PaymentGateway


def live_gateway(handler, **kwargs):
    return PaymentGateway(
        merchant_id="MERCHANT1",
        salt_key="salt",
        salt_index="2",
        transport=httpx.MockTransport(handler),
        timeout=1,
        **kwargs,
    )


def test_transaction_ids_carry_the_order_id():
    transaction_id = PaymentGateway.transaction_id_for(42)
    assert transaction_id.startswith("order_42_")
    assert PaymentGateway.order_id_from(transaction_id) == 42


@pytest.mark.parametrize("bad", ["", "order_x_1", "receipt_5", "order_5_"])
def test_malformed_transaction_ids_are_rejected(bad):
    with pytest.raises(ValidationError):
        PaymentGateway.order_id_from(bad)


def test_signature_is_sha256_with_salt_index():
    gateway = PaymentGateway(merchant_id="M", salt_key="salt", salt_index="3")
    expected = hashlib.sha256(b"payload/pg/v1/paysalt").hexdigest() + "###3"
    assert gateway.sign("payload", "/pg/v1/pay") == expected


async def test_demo_mode_succeeds_locally():
    gateway = PaymentGateway(merchant_id="DEMO_MERCHANT", production=False)
    assert gateway.demo

    payment = await gateway.initiate(7, Decimal("190"), 1, "http://r", "http://c")
    assert payment["redirect_url"].startswith("/demo-payment?amount=190")
    status = await gateway.check_status(payment["transaction_id"])
    assert status["success"] is True
    assert status["state"] == "COMPLETED"


async def test_live_initiate_posts_signed_request():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["verify"] = request.headers["X-VERIFY"]
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {"instrumentResponse": {"redirectInfo": {"url": "https://pay/x"}}},
            },
        )

    gateway = live_gateway(handler)
    payment = await gateway.initiate(3, Decimal("50"), 1, "http://r", "http://c")

    assert payment["redirect_url"] == "https://pay/x"
    assert seen["path"].endswith("/pg/v1/pay")
    assert seen["verify"].endswith("###2")


async def test_live_status_check_reports_state():
    def handler(request):
        return httpx.Response(
            200,
            json={"success": True, "data": {"state": "COMPLETED", "transactionId": "T1"}},
        )

    status = await live_gateway(handler).check_status("order_3_1")
    assert status == {"success": True, "state": "COMPLETED", "payment_id": "T1"}


async def test_gateway_timeout_is_an_upstream_error():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(UpstreamError):
        await live_gateway(handler).check_status("order_3_1")


async def test_gateway_http_failure_is_an_upstream_error():
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(UpstreamError):
        await live_gateway(handler).initiate(3, Decimal("50"), 1, "http://r", "http://c")


async def test_declined_initiation_is_an_upstream_error():
    def handler(request):
        return httpx.Response(200, json={"success": False, "message": "declined"})

    with pytest.raises(UpstreamError):
        await live_gateway(handler).initiate(3, Decimal("50"), 1, "http://r", "http://c")
