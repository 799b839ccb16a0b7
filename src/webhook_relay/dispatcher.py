import logging
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from webhook_relay.metrics import DELIVERIES_TOTAL, DELIVERY_DURATION
from webhook_relay.signing import SIGNATURE_HEADER, canonical_json, sign_body
from webhook_relay.store import DeliveryLog, SQLiteDeliveryLogStore, SQLiteSubscriptionStore, Subscription

logger = logging.getLogger(__name__)


def build_envelope(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": str(event_type),
        "timestamp": datetime.now(UTC).isoformat(),
        "data": payload,
    }


class WebhookDispatcher:
    def __init__(
        self,
        http: httpx.AsyncClient,
        subscriptions: SQLiteSubscriptionStore,
        logs: SQLiteDeliveryLogStore,
        timeout: float = 10.0,
        response_body_limit: int = 5000,
        user_agent: str = "EduCommunity-Webhook/1.0",
    ) -> None:
        self._http = http
        self._subscriptions = subscriptions
        self._logs = logs
        self._timeout = timeout
        self._response_body_limit = response_body_limit
        self._user_agent = user_agent

    async def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            subscriptions = await self._subscriptions.list_matching(str(event_type))
        except Exception:
            logger.exception("Could not load subscriptions for event=%s", event_type)
            return
        logger.info("Dispatching event=%s to %d subscriber(s)", event_type, len(subscriptions))
        for subscription in subscriptions:
            try:
                await self.deliver(subscription, event_type, payload)
            except Exception:
                logger.exception("Delivery to webhook %s failed unexpectedly", subscription.id)

    async def deliver(self, subscription: Subscription, event_type: str, payload: dict[str, Any]) -> DeliveryLog:
        envelope = build_envelope(event_type, payload)
        body = canonical_json(envelope)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Event": str(event_type),
        }
        if subscription.secret_key:
            headers[SIGNATURE_HEADER] = sign_body(subscription.secret_key, body)

        start = time.monotonic()
        try:
            response = await self._http.post(subscription.url, content=body, headers=headers, timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            DELIVERIES_TOTAL.labels(result="error").inc()
            logger.warning("Webhook %s (%s) unreachable: %r", subscription.id, subscription.name, e)
            return await self._logs.append(
                webhook_id=subscription.id,
                event_type=str(event_type),
                payload=envelope,
                response_status=None,
                response_body=None,
                error_message=str(e) or type(e).__name__,
                is_success=False,
            )
        finally:
            DELIVERY_DURATION.observe(time.monotonic() - start)

        is_success = 200 <= response.status_code < 300
        DELIVERIES_TOTAL.labels(result="success" if is_success else "failure").inc()
        if is_success:
            logger.info("Webhook %s delivered event=%s status=%d", subscription.id, event_type, response.status_code)
        else:
            logger.warning(
                "Webhook %s (%s) rejected event=%s status=%d",
                subscription.id,
                subscription.name,
                event_type,
                response.status_code,
            )
        return await self._logs.append(
            webhook_id=subscription.id,
            event_type=str(event_type),
            payload=envelope,
            response_status=response.status_code,
            response_body=response.text[: self._response_body_limit],
            error_message=None,
            is_success=is_success,
        )

    async def redeliver(self, log: DeliveryLog) -> DeliveryLog | None:
        """Send a logged event again; None when its subscription is gone."""
        subscription = await self._subscriptions.get(log.webhook_id)
        if subscription is None:
            return None
        logger.info("Redelivering log %s to webhook %s", log.id, subscription.id)
        return await self.deliver(subscription, log.event_type, log.payload.get("data", {}))
