"""Interfaces to the services this one talks to, plus their HTTP clients.

The core only depends on the abstract classes; ``main`` wires the HTTP
implementations and tests pass in-memory ones.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import httpx

from .errors import PaymentError

logger = logging.getLogger("order-service.collaborators")


def default_client_factory(timeout: float = 5.0) -> Callable[[], httpx.Client]:
    return lambda: httpx.Client(timeout=timeout)


# ----- Pub/sub -----


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, topic: str, event: str, payload: dict) -> None:
        pass


class HttpEventPublisher(EventPublisher):
    """Forwards events to the realtime gateway, which owns the socket rooms."""

    def __init__(self, base_url: str, client_factory: Callable[[], httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client_factory = client_factory or default_client_factory()

    def publish(self, topic: str, event: str, payload: dict) -> None:
        with self.client_factory() as client:
            r = client.post(
                f"{self.base_url}/v1/publish",
                json={"topic": topic, "event": event, "payload": payload},
            )
            r.raise_for_status()


class InMemoryEventPublisher(EventPublisher):
    def __init__(self):
        self.published: List[tuple] = []
        self._subscribers: Dict[str, List[Callable[[str, dict], None]]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Callable[[str, dict], None]) -> None:
        self._subscribers[topic].append(callback)

    def publish(self, topic: str, event: str, payload: dict) -> None:
        self.published.append((topic, event, payload))
        for callback in list(self._subscribers.get(topic, ())):
            callback(event, payload)


# ----- Push notifications -----


class PushNotifier(ABC):
    @abstractmethod
    def send(self, device_token: str, title: str, body: str, data: dict) -> None:
        pass


class HttpPushNotifier(PushNotifier):
    def __init__(self, base_url: str, client_factory: Callable[[], httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client_factory = client_factory or default_client_factory()

    def send(self, device_token: str, title: str, body: str, data: dict) -> None:
        with self.client_factory() as client:
            r = client.post(
                f"{self.base_url}/v1/notifications/push",
                json={"token": device_token, "title": title, "body": body, "data": data},
            )
            r.raise_for_status()


# ----- Payments -----


class PaymentGateway(ABC):
    @abstractmethod
    def authorize(self, amount: Decimal, order_ref: str) -> str:
        """Reserve ``amount``; returns the gateway's transaction reference."""

    @abstractmethod
    def confirm(self, transaction_ref: str) -> str:
        """Returns the gateway status, ``succeeded`` when funds were captured."""

    @abstractmethod
    def refund(self, transaction_ref: str, amount: Optional[Decimal] = None) -> str:
        """Returns the refund reference."""


def sign_webhook(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw webhook body, as the gateway sends it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_webhook(secret, body).encode(), signature.encode())


class HttpPaymentGateway(PaymentGateway):
    def __init__(self, base_url: str, client_factory: Callable[[], httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client_factory = client_factory or default_client_factory()

    def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        try:
            with self.client_factory() as client:
                r = client.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers={"Idempotency-Key": idempotency_key},
                )
        except httpx.HTTPError as e:
            logger.warning(f"Payment service unreachable: {e}")
            raise PaymentError("Payment service unavailable") from e

        if r.status_code not in (200, 201):
            logger.warning(f"Payment service answered {r.status_code} for {path}")
            raise PaymentError("Payment was declined by the payment service")
        return r.json()

    def authorize(self, amount: Decimal, order_ref: str) -> str:
        data = self._post(
            "/v1/payments/authorize",
            {"amount": str(amount), "reference": order_ref},
            idempotency_key=f"order-{order_ref}-authorize",
        )
        if not data.get("transaction_id"):
            raise PaymentError("Payment service returned no transaction reference")
        return data["transaction_id"]

    def confirm(self, transaction_ref: str) -> str:
        data = self._post(
            f"/v1/payments/{transaction_ref}/confirm",
            {},
            idempotency_key=f"{transaction_ref}-confirm",
        )
        return data.get("status", "unknown")

    def refund(self, transaction_ref: str, amount: Optional[Decimal] = None) -> str:
        payload = {"amount": str(amount)} if amount is not None else {}
        data = self._post(
            f"/v1/payments/{transaction_ref}/refund",
            payload,
            idempotency_key=f"{transaction_ref}-refund-{amount if amount is not None else 'full'}",
        )
        if not data.get("refund_id"):
            raise PaymentError("Payment service returned no refund reference")
        return data["refund_id"]
