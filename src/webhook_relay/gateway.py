import logging
from dataclasses import dataclass
from typing import Any

import httpx

from webhook_relay.payments import PaymentStatus

logger = logging.getLogger(__name__)

GATEWAY_NAME = "mercadopago"

STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "approved": PaymentStatus.SUCCEEDED,
    "authorized": PaymentStatus.SUCCEEDED,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "rejected": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.FAILED,
}


def convert_status(gateway_status: Any) -> PaymentStatus:
    if not isinstance(gateway_status, str):
        return PaymentStatus.UNKNOWN
    return STATUS_MAP.get(gateway_status, PaymentStatus.UNKNOWN)


class GatewayError(Exception):
    pass


class GatewayNotConfiguredError(GatewayError):
    pass


class PaymentNotFoundError(GatewayError):
    def __init__(self, payment_id: str) -> None:
        super().__init__(f"payment {payment_id} not found at gateway")
        self.payment_id = payment_id


class InvalidSignatureError(GatewayError):
    pass


@dataclass
class GatewayPayment:
    id: str
    status: str | None
    status_detail: str | None
    external_reference: str | None
    payment_method_id: str | None
    installments: int | None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GatewayPayment":
        return cls(
            id=str(data["id"]),
            status=data.get("status"),
            status_detail=data.get("status_detail"),
            external_reference=data.get("external_reference"),
            payment_method_id=data.get("payment_method_id"),
            installments=data.get("installments"),
        )


class MercadoPagoClient:
    def __init__(self, http: httpx.AsyncClient, access_token: str | None, api_url: str, timeout: float) -> None:
        self._http = http
        self._access_token = access_token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return self._access_token is not None

    @property
    def environment(self) -> str:
        if self._access_token and self._access_token.startswith("APP_USR-"):
            return "production"
        return "test"

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        if not self.configured:
            raise GatewayNotConfiguredError("Mercado Pago access token is not configured")
        response = await self._http.get(
            f"{self._api_url}/v1/payments/{payment_id}",
            headers={"Authorization": f"Bearer {self._access_token}"},
            timeout=self._timeout,
        )
        if response.status_code == 404:
            raise PaymentNotFoundError(payment_id)
        if response.is_error:
            raise GatewayError(f"gateway returned {response.status_code} for payment {payment_id}")
        payment = GatewayPayment.from_api(response.json())
        logger.info("Fetched gateway payment %s status=%s", payment.id, payment.status)
        return payment
