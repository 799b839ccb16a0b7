"""
Locust load tests for the gateway notification endpoint.

Run against a local server:
    uv run uvicorn webhook_relay.app:create_app --factory --host 0.0.0.0 --port 8000

Headless benchmark (60 s, 50 users, ramp 10/s):
    uv run locust -f load_tests/locustfile.py --headless \
        -u 50 -r 10 --run-time 60s --host http://localhost:8000

Notifications point at payment ids the gateway does not know, so every request
exercises parsing, the gateway round trip and the "ignored" acknowledgement.
"""

import random

from locust import HttpUser, between, task


class GatewayNotificationUser(HttpUser):
    """Simulates the gateway delivering fresh payment notifications."""

    wait_time = between(0.05, 0.2)
    weight = 3

    @task
    def post_payment_notification(self) -> None:
        body = {
            "type": "payment",
            "action": random.choice(["payment.created", "payment.updated"]),
            "data": {"id": str(random.randint(10**9, 10**10))},
        }
        with self.client.post("/webhooks/mercadopago", json=body, catch_response=True) as resp:
            if resp.status_code == 500:
                resp.failure("gateway lookup failed")


class DuplicateNotificationUser(HttpUser):
    """Simulates the gateway redelivering the same notification (at-least-once)."""

    wait_time = between(0.1, 0.5)
    weight = 1

    def on_start(self) -> None:
        self._body = {
            "type": "payment",
            "action": "payment.updated",
            "data": {"id": str(random.randint(10**9, 10**10))},
        }

    @task
    def post_duplicate_notification(self) -> None:
        self.client.post("/webhooks/mercadopago", json=self._body)


class PingUser(HttpUser):
    """Simulates test pings and unrelated notification types."""

    wait_time = between(0.1, 0.5)
    weight = 1

    @task(2)
    def post_merchant_order(self) -> None:
        self.client.post(
            "/webhooks/mercadopago",
            json={"type": "merchant_order", "action": "created", "data": {"id": "1"}},
        )

    @task(1)
    def post_garbage(self) -> None:
        self.client.post("/webhooks/mercadopago", data=b"ping")

    @task(1)
    def get_health(self) -> None:
        self.client.get("/health")
