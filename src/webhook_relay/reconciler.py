import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from webhook_relay.dispatcher import WebhookDispatcher
from webhook_relay.events import EventType
from webhook_relay.gateway import (
    GATEWAY_NAME,
    GatewayPayment,
    InvalidSignatureError,
    MercadoPagoClient,
    PaymentNotFoundError,
    convert_status,
)
from webhook_relay.metrics import ENROLLMENTS_CREATED_TOTAL, RECONCILIATIONS_TOTAL
from webhook_relay.payments import Payment, PaymentStatus, SQLitePaymentStore
from webhook_relay.signing import verify_gateway_signature

logger = logging.getLogger(__name__)

PAYMENT_ACTIONS = ("payment.created", "payment.updated")


class ReconciliationStatus(StrEnum):
    SUCCESS = "success"
    IGNORED = "ignored"
    WARNING = "warning"


@dataclass
class ReconciliationResult:
    status: ReconciliationStatus
    message: str
    payment_id: str | None = None
    new_status: PaymentStatus | None = None
    event_type: str | None = None


def parse_envelope(raw_body: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _result(status: ReconciliationStatus, message: str, **fields: Any) -> ReconciliationResult:
    RECONCILIATIONS_TOTAL.labels(outcome=str(status)).inc()
    return ReconciliationResult(status, message, **fields)


class PaymentReconciler:
    def __init__(
        self,
        gateway: MercadoPagoClient,
        payments: SQLitePaymentStore,
        dispatcher: WebhookDispatcher,
        webhook_secret: str | None = None,
        skip_signature_validation: bool = False,
        notification_path: str = "/webhooks/mercadopago",
    ) -> None:
        self._gateway = gateway
        self._payments = payments
        self._dispatcher = dispatcher
        self._webhook_secret = webhook_secret
        self._skip_signature_validation = skip_signature_validation
        self._notification_path = notification_path

    async def reconcile(self, raw_body: bytes, headers: Mapping[str, str]) -> ReconciliationResult:
        headers = {k.lower(): v for k, v in headers.items()}
        if self._webhook_secret:
            self._check_signature(raw_body, headers)

        body = parse_envelope(raw_body)
        event_type = body.get("type")
        action = body.get("action")
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        logger.info(
            "Gateway notification type=%s action=%s data_id=%s request_id=%s",
            event_type,
            action,
            data.get("id"),
            headers.get("x-request-id"),
        )

        if event_type != "payment":
            return _result(
                ReconciliationStatus.IGNORED,
                f"Notification type {event_type} not handled",
                event_type=event_type,
            )
        if action not in PAYMENT_ACTIONS:
            return _result(
                ReconciliationStatus.IGNORED,
                f"Payment action {action} not handled",
                event_type=event_type,
            )
        if data.get("id") is None:
            return _result(ReconciliationStatus.IGNORED, "Notification without payment id", event_type=event_type)

        gateway_payment_id = str(data["id"])
        try:
            gateway_payment = await self._gateway.get_payment(gateway_payment_id)
        except PaymentNotFoundError:
            logger.info("Gateway has no payment %s, treating as test notification", gateway_payment_id)
            return _result(ReconciliationStatus.IGNORED, "Test payment ignored", event_type=event_type)

        return await self._apply(gateway_payment)

    def _check_signature(self, raw_body: bytes, headers: dict[str, str]) -> None:
        header = headers.get("x-signature") or headers.get("signature")
        if header:
            fallback_timestamp = (
                headers.get("x-timestamp") or headers.get("x-mercadopago-timestamp") or str(int(time.time()))
            )
            valid = verify_gateway_signature(
                self._webhook_secret,
                self._notification_path,
                raw_body,
                header,
                fallback_timestamp,
            )
        else:
            valid = False
        if valid:
            return
        if self._skip_signature_validation:
            logger.warning("Invalid gateway signature, processing anyway (validation disabled)")
            return
        raise InvalidSignatureError("missing or invalid gateway signature")

    async def _apply(self, gateway_payment: GatewayPayment) -> ReconciliationResult:
        new_status = convert_status(gateway_payment.status)
        if new_status is PaymentStatus.UNKNOWN:
            logger.warning("Unmapped gateway status %r for payment %s", gateway_payment.status, gateway_payment.id)

        payment = await self._payments.find_by_gateway_reference(
            GATEWAY_NAME,
            gateway_payment.id,
            gateway_payment.external_reference,
        )
        if payment is None:
            logger.warning("Gateway payment %s has no local payment", gateway_payment.id)
            return _result(ReconciliationStatus.WARNING, "Payment not found in local store", event_type="payment")

        updated = await self._payments.apply_status(
            payment.id,
            new_status,
            {
                "gateway_payment_id": gateway_payment.id,
                "gateway_status": gateway_payment.status,
                "gateway_status_detail": gateway_payment.status_detail,
                "payment_method": gateway_payment.payment_method_id,
                "installments": gateway_payment.installments,
                "updated_at": datetime.now(UTC).isoformat(),
            },
        )
        if updated is None:
            logger.info("Payment %s stays %s (gateway reports %s)", payment.id, payment.status, new_status)
            if payment.status is PaymentStatus.SUCCEEDED:
                # an earlier attempt may have failed between the update and the insert
                await self._enroll(payment)
            return _result(
                ReconciliationStatus.IGNORED,
                "Payment status unchanged",
                payment_id=payment.id,
                new_status=payment.status,
                event_type="payment",
            )

        logger.info("Payment %s %s -> %s", updated.id, payment.status, updated.status)
        if updated.status is PaymentStatus.SUCCEEDED:
            await self._enroll(updated)
            await self._notify_succeeded(updated, gateway_payment.id)
        return _result(
            ReconciliationStatus.SUCCESS,
            "Payment updated",
            payment_id=updated.id,
            new_status=updated.status,
            event_type="payment",
        )

    async def _enroll(self, payment: Payment) -> None:
        enrollment = await self._payments.create_enrollment(payment.user_id, payment.course_id)
        if enrollment is None:
            logger.info("User %s already enrolled in course %s", payment.user_id, payment.course_id)
            return
        ENROLLMENTS_CREATED_TOTAL.inc()
        logger.info("Enrollment %s created for payment %s", enrollment.id, payment.id)

    async def _notify_succeeded(self, payment: Payment, gateway_payment_id: str) -> None:
        try:
            await self._dispatcher.dispatch(
                EventType.PAYMENT_SUCCEEDED,
                {
                    "payment_id": payment.id,
                    "user_id": payment.user_id,
                    "course_id": payment.course_id,
                    "amount": payment.amount,
                    "gateway": payment.gateway,
                    "gateway_payment_id": gateway_payment_id,
                },
            )
        except Exception:
            logger.exception("payment.succeeded notification failed for payment %s", payment.id)
