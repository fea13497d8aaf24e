import json
from decimal import Decimal

import httpx
import pytest

from order_service.collaborators import HttpEventPublisher, HttpPaymentGateway, HttpPushNotifier
from order_service.errors import PaymentError


def client_for(handler, seen):
    def record(request):
        seen.append(request)
        return handler(request)

    return lambda: httpx.Client(transport=httpx.MockTransport(record))


def test_publisher_posts_to_gateway():
    seen = []
    publisher = HttpEventPublisher("http://realtime/", client_for(lambda r: httpx.Response(202), seen))

    publisher.publish("order:7", "orderStatusUpdate", {"status": "ready"})

    (request,) = seen
    assert request.url == "http://realtime/v1/publish"
    assert json.loads(request.content) == {
        "topic": "order:7",
        "event": "orderStatusUpdate",
        "payload": {"status": "ready"},
    }


def test_publisher_raises_on_gateway_error():
    publisher = HttpEventPublisher("http://realtime", client_for(lambda r: httpx.Response(503), []))
    with pytest.raises(httpx.HTTPStatusError):
        publisher.publish("order:7", "orderStatusUpdate", {})


def test_push_notifier_payload():
    seen = []
    notifier = HttpPushNotifier("http://notify", client_for(lambda r: httpx.Response(200), seen))

    notifier.send("tok", "Order ORD-1", "Your order is ready for pickup!", {"screen": "order_tracking"})

    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/v1/notifications/push"
    assert body["token"] == "tok"
    assert body["data"] == {"screen": "order_tracking"}


class TestPaymentGateway:
    def test_authorize_returns_transaction_and_sends_idempotency_key(self):
        seen = []
        gateway = HttpPaymentGateway(
            "http://payments",
            client_for(lambda r: httpx.Response(201, json={"transaction_id": "pi_123"}), seen),
        )

        assert gateway.authorize(Decimal("31.62"), "ORD-1") == "pi_123"
        assert json.loads(seen[0].content) == {"amount": "31.62", "reference": "ORD-1"}
        assert seen[0].headers["Idempotency-Key"] == "order-ORD-1-authorize"

    def test_confirm_returns_gateway_status(self):
        seen = []
        gateway = HttpPaymentGateway(
            "http://payments",
            client_for(lambda r: httpx.Response(200, json={"status": "succeeded"}), seen),
        )
        assert gateway.confirm("pi_123") == "succeeded"
        assert seen[0].url.path == "/v1/payments/pi_123/confirm"

    def test_partial_refund(self):
        seen = []
        gateway = HttpPaymentGateway(
            "http://payments",
            client_for(lambda r: httpx.Response(200, json={"refund_id": "re_9"}), seen),
        )
        assert gateway.refund("pi_123", Decimal("5.00")) == "re_9"
        assert json.loads(seen[0].content) == {"amount": "5.00"}

    def test_declined(self):
        gateway = HttpPaymentGateway(
            "http://payments",
            client_for(lambda r: httpx.Response(402, json={"error": "card_declined"}), []),
        )
        with pytest.raises(PaymentError):
            gateway.authorize(Decimal("10.00"), "ORD-1")

    def test_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = HttpPaymentGateway("http://payments", client_for(refuse, []))
        with pytest.raises(PaymentError) as exc:
            gateway.confirm("pi_123")
        assert exc.value.message == "Payment service unavailable"

    def test_missing_reference_is_an_error(self):
        gateway = HttpPaymentGateway("http://payments", client_for(lambda r: httpx.Response(200, json={}), []))
        with pytest.raises(PaymentError):
            gateway.authorize(Decimal("10.00"), "ORD-1")
