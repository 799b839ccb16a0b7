import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from webhook_relay.app import create_app
from webhook_relay.config import Settings
from webhook_relay.database import open_db
from webhook_relay.dependencies import get_db, get_http_client
from webhook_relay.dispatcher import WebhookDispatcher
from webhook_relay.gateway import MercadoPagoClient
from webhook_relay.payments import SQLitePaymentStore
from webhook_relay.reconciler import PaymentReconciler
from webhook_relay.store import SQLiteDeliveryLogStore, SQLiteSubscriptionStore

ADMIN_TOKEN = "test-admin-token"
GATEWAY_URL = "https://api.mercadopago.com"


class FakeNetwork:
    """Stands in for subscriber endpoints and the gateway payments API."""

    def __init__(self) -> None:
        self.deliveries: list[httpx.Request] = []
        self.gateway_payments: dict[str, dict] = {}
        self.gateway_error: int | None = None
        self.status_by_host: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.response_text = "ok"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.mercadopago.com":
            if self.gateway_error is not None:
                return httpx.Response(self.gateway_error, json={"message": "boom"})
            payment_id = request.url.path.rsplit("/", 1)[-1]
            if payment_id not in self.gateway_payments:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=self.gateway_payments[payment_id])
        self.deliveries.append(request)
        if request.url.host in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status_by_host.get(request.url.host, 200), text=self.response_text)

    def delivered_to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.deliveries if r.url.host == host]


@pytest.fixture
def settings(tmp_path: pytest.TempPathFactory) -> Settings:
    return Settings(
        db_path=str(tmp_path / "test.db"),
        admin_token=ADMIN_TOKEN,
        mercadopago_access_token="TEST-1234",
        mercadopago_api_url=GATEWAY_URL,
    )


@pytest.fixture
async def db(tmp_path: pytest.TempPathFactory):
    conn = await open_db(str(tmp_path / "test.db"))
    yield conn
    await conn.close()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
async def http(network: FakeNetwork):
    async with httpx.AsyncClient(transport=httpx.MockTransport(network)) as client:
        yield client


@pytest.fixture
def subscriptions(db) -> SQLiteSubscriptionStore:
    return SQLiteSubscriptionStore(db)


@pytest.fixture
def logs(db) -> SQLiteDeliveryLogStore:
    return SQLiteDeliveryLogStore(db)


@pytest.fixture
def payments(db) -> SQLitePaymentStore:
    return SQLitePaymentStore(db)


@pytest.fixture
def dispatcher(http, subscriptions, logs) -> WebhookDispatcher:
    return WebhookDispatcher(http, subscriptions, logs, timeout=1.0, response_body_limit=100)


@pytest.fixture
def gateway(http) -> MercadoPagoClient:
    return MercadoPagoClient(http, "TEST-1234", GATEWAY_URL, timeout=1.0)


@pytest.fixture
def reconciler(gateway, payments, dispatcher) -> PaymentReconciler:
    return PaymentReconciler(gateway, payments, dispatcher)


@pytest.fixture
async def client(settings: Settings, db, http) -> AsyncClient:
    app = create_app(settings)
    app.state.ready = True
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_http_client] = lambda: http
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
