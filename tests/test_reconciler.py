import asyncio
import hashlib
import hmac
import json

import aiosqlite
import pytest

from webhook_relay.dispatcher import WebhookDispatcher
from webhook_relay.gateway import GatewayError, InvalidSignatureError, MercadoPagoClient
from webhook_relay.payments import PaymentStatus, SQLitePaymentStore
from webhook_relay.reconciler import PaymentReconciler, ReconciliationStatus, parse_envelope
from webhook_relay.store import SQLiteSubscriptionStore

from conftest import FakeNetwork


def _notification(payment_id: str = "PAY123", action: str = "payment.updated") -> bytes:
    return json.dumps({"type": "payment", "action": action, "data": {"id": payment_id}}).encode()


def _gateway_payment(status: str, payment_id: str = "PAY123", **extra) -> dict:
    return {
        "id": payment_id,
        "status": status,
        "status_detail": "accredited" if status == "approved" else status,
        "external_reference": None,
        "payment_method_id": "pix",
        "installments": 1,
        **extra,
    }


@pytest.fixture
async def pending_payment(payments: SQLitePaymentStore):
    return await payments.create(
        user_id="u1",
        course_id="c1",
        amount=199.0,
        gateway="mercadopago",
        payment_id="p1",
        metadata={"gateway_payment_id": "PAY123", "preference_id": "pref-1"},
    )


async def _enrollment_count(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT COUNT(*) FROM enrollments WHERE user_id='u1' AND course_id='c1'") as cursor:
        return (await cursor.fetchone())[0]


async def test_approved_payment_end_to_end(
    reconciler: PaymentReconciler,
    payments: SQLitePaymentStore,
    subscriptions: SQLiteSubscriptionStore,
    network: FakeNetwork,
    db: aiosqlite.Connection,
    pending_payment,
) -> None:
    await subscriptions.create("crm", "https://crm.example/hook", ["payment.succeeded"])
    await subscriptions.create("erp", "https://erp.example/hook", ["payment.succeeded", "user.created"])
    await subscriptions.create("posts", "https://posts.example/hook", ["post.created"])
    network.gateway_payments["PAY123"] = _gateway_payment("approved")

    result = await reconciler.reconcile(_notification(), {"x-request-id": "req-1"})

    assert result.status is ReconciliationStatus.SUCCESS
    assert result.payment_id == "p1"
    assert result.new_status is PaymentStatus.SUCCEEDED
    payment = await payments.get("p1")
    assert payment.status is PaymentStatus.SUCCEEDED
    assert payment.metadata["preference_id"] == "pref-1"
    assert payment.metadata["gateway_status"] == "approved"
    assert payment.metadata["gateway_status_detail"] == "accredited"
    assert await payments.get_enrollment("u1", "c1") is not None
    assert sorted(r.url.host for r in network.deliveries) == ["crm.example", "erp.example"]
    body = json.loads(network.deliveries[0].content)
    assert body["event"] == "payment.succeeded"
    assert body["data"] == {
        "payment_id": "p1",
        "user_id": "u1",
        "course_id": "c1",
        "amount": 199.0,
        "gateway": "mercadopago",
        "gateway_payment_id": "PAY123",
    }

    again = await reconciler.reconcile(_notification(), {"x-request-id": "req-2"})

    assert again.status is ReconciliationStatus.IGNORED
    assert await _enrollment_count(db) == 1
    assert len(network.deliveries) == 2


async def test_repeated_notifications_enroll_once(
    reconciler: PaymentReconciler, network: FakeNetwork, db: aiosqlite.Connection, pending_payment
) -> None:
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    results = [await reconciler.reconcile(_notification(), {}) for _ in range(5)]
    assert [r.status for r in results].count(ReconciliationStatus.SUCCESS) == 1
    assert await _enrollment_count(db) == 1


async def test_concurrent_duplicate_notifications(
    reconciler: PaymentReconciler,
    subscriptions: SQLiteSubscriptionStore,
    network: FakeNetwork,
    db: aiosqlite.Connection,
    pending_payment,
) -> None:
    await subscriptions.create("crm", "https://crm.example/hook", ["payment.succeeded"])
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    results = await asyncio.gather(*(reconciler.reconcile(_notification(), {}) for _ in range(4)))
    assert [r.status for r in results].count(ReconciliationStatus.SUCCESS) == 1
    assert await _enrollment_count(db) == 1
    assert len(network.deliveries) == 1


async def test_existing_enrollment_is_kept(
    reconciler: PaymentReconciler,
    payments: SQLitePaymentStore,
    network: FakeNetwork,
    db: aiosqlite.Connection,
    pending_payment,
) -> None:
    existing = await payments.create_enrollment("u1", "c1")
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    result = await reconciler.reconcile(_notification(), {})
    assert result.status is ReconciliationStatus.SUCCESS
    assert (await payments.get_enrollment("u1", "c1")).id == existing.id
    assert await _enrollment_count(db) == 1


async def test_stale_pending_does_not_revert(
    reconciler: PaymentReconciler, payments: SQLitePaymentStore, network: FakeNetwork, pending_payment
) -> None:
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    await reconciler.reconcile(_notification(), {})
    network.gateway_payments["PAY123"] = _gateway_payment("pending")
    result = await reconciler.reconcile(_notification(), {})
    assert result.status is ReconciliationStatus.IGNORED
    assert (await payments.get("p1")).status is PaymentStatus.SUCCEEDED


async def test_refund_after_success(
    reconciler: PaymentReconciler, payments: SQLitePaymentStore, network: FakeNetwork, pending_payment
) -> None:
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    await reconciler.reconcile(_notification(), {})
    network.gateway_payments["PAY123"] = _gateway_payment("refunded")
    result = await reconciler.reconcile(_notification(), {})
    assert result.status is ReconciliationStatus.SUCCESS
    assert (await payments.get("p1")).status is PaymentStatus.REFUNDED


async def test_rejected_payment_does_not_enroll(
    reconciler: PaymentReconciler,
    payments: SQLitePaymentStore,
    subscriptions: SQLiteSubscriptionStore,
    network: FakeNetwork,
    pending_payment,
) -> None:
    await subscriptions.create("crm", "https://crm.example/hook", ["payment.succeeded"])
    network.gateway_payments["PAY123"] = _gateway_payment("rejected")
    result = await reconciler.reconcile(_notification(), {})
    assert result.new_status is PaymentStatus.FAILED
    assert await payments.get_enrollment("u1", "c1") is None
    assert network.deliveries == []


async def test_unmapped_status_becomes_unknown(
    reconciler: PaymentReconciler, payments: SQLitePaymentStore, network: FakeNetwork, pending_payment
) -> None:
    network.gateway_payments["PAY123"] = _gateway_payment("expired")
    result = await reconciler.reconcile(_notification(), {})
    assert result.status is ReconciliationStatus.SUCCESS
    assert (await payments.get("p1")).status is PaymentStatus.UNKNOWN


async def test_match_by_external_reference(
    reconciler: PaymentReconciler, payments: SQLitePaymentStore, network: FakeNetwork
) -> None:
    await payments.create(
        user_id="u1",
        course_id="c1",
        amount=50.0,
        gateway="mercadopago",
        payment_id="p2",
        external_reference="course_c1_user_u1_1700000000",
    )
    network.gateway_payments["777"] = _gateway_payment(
        "approved", payment_id="777", external_reference="course_c1_user_u1_1700000000"
    )
    result = await reconciler.reconcile(_notification("777", action="payment.created"), {})
    assert result.payment_id == "p2"
    assert (await payments.get("p2")).metadata["gateway_payment_id"] == "777"


async def test_match_by_numeric_gateway_payment_id(
    reconciler: PaymentReconciler, payments: SQLitePaymentStore, network: FakeNetwork
) -> None:
    await payments.create(
        user_id="u1",
        course_id="c1",
        amount=50.0,
        gateway="mercadopago",
        payment_id="p9",
        metadata={"gateway_payment_id": 123456},
    )
    network.gateway_payments["123456"] = _gateway_payment("approved", payment_id=123456)
    result = await reconciler.reconcile(_notification("123456"), {})
    assert result.status is ReconciliationStatus.SUCCESS
    assert result.payment_id == "p9"
    assert (await payments.get("p9")).status is PaymentStatus.SUCCEEDED
    assert await payments.get_enrollment("u1", "c1") is not None


async def test_unknown_local_payment_is_warning(reconciler: PaymentReconciler, network: FakeNetwork) -> None:
    network.gateway_payments["PAY404"] = _gateway_payment("approved", payment_id="PAY404")
    result = await reconciler.reconcile(_notification("PAY404"), {})
    assert result.status is ReconciliationStatus.WARNING


async def test_gateway_test_ping_is_ignored(reconciler: PaymentReconciler) -> None:
    result = await reconciler.reconcile(_notification("123456"), {})
    assert result.status is ReconciliationStatus.IGNORED
    assert result.event_type == "payment"


@pytest.mark.parametrize("raw_body", [b"", b"not json", b"[1,2]", b"\xff\xfe"])
async def test_malformed_body_is_ignored(reconciler: PaymentReconciler, raw_body: bytes) -> None:
    result = await reconciler.reconcile(raw_body, {})
    assert result.status is ReconciliationStatus.IGNORED


async def test_other_types_are_ignored(reconciler: PaymentReconciler, network: FakeNetwork) -> None:
    body = json.dumps({"type": "merchant_order", "action": "created", "data": {"id": "1"}}).encode()
    result = await reconciler.reconcile(body, {})
    assert result.status is ReconciliationStatus.IGNORED
    assert result.event_type == "merchant_order"


async def test_other_payment_actions_are_ignored(reconciler: PaymentReconciler) -> None:
    result = await reconciler.reconcile(_notification(action="payment.deleted"), {})
    assert result.status is ReconciliationStatus.IGNORED


async def test_payment_without_id_is_ignored(reconciler: PaymentReconciler) -> None:
    body = json.dumps({"type": "payment", "action": "payment.updated", "data": {}}).encode()
    assert (await reconciler.reconcile(body, {})).status is ReconciliationStatus.IGNORED


async def test_gateway_failure_propagates(
    reconciler: PaymentReconciler, network: FakeNetwork, pending_payment
) -> None:
    network.gateway_error = 500
    with pytest.raises(GatewayError):
        await reconciler.reconcile(_notification(), {})


async def test_dispatch_failure_keeps_transition(
    gateway: MercadoPagoClient,
    payments: SQLitePaymentStore,
    dispatcher: WebhookDispatcher,
    network: FakeNetwork,
    pending_payment,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def explode(*args, **kwargs):
        raise RuntimeError("dispatcher down")

    monkeypatch.setattr(dispatcher, "dispatch", explode)
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    result = await PaymentReconciler(gateway, payments, dispatcher).reconcile(_notification(), {})
    assert result.status is ReconciliationStatus.SUCCESS
    assert (await payments.get("p1")).status is PaymentStatus.SUCCEEDED
    assert await payments.get_enrollment("u1", "c1") is not None


async def test_missing_enrollment_is_repaired_on_redelivery(
    reconciler: PaymentReconciler, payments: SQLitePaymentStore, network: FakeNetwork, pending_payment
) -> None:
    await payments.apply_status("p1", PaymentStatus.SUCCEEDED, {})
    network.gateway_payments["PAY123"] = _gateway_payment("approved")
    result = await reconciler.reconcile(_notification(), {})
    assert result.status is ReconciliationStatus.IGNORED
    assert await payments.get_enrollment("u1", "c1") is not None
    assert network.deliveries == []


def _signed_headers(secret: str, raw_body: bytes, ts: str = "1700000000") -> dict[str, str]:
    digest = hmac.new(secret.encode(), f"{ts}POST/webhooks/mercadopago".encode() + raw_body, hashlib.sha256)
    return {"X-Signature": f"ts={ts},v1={digest.hexdigest()}", "X-Request-Id": "req-1"}


async def test_signature_accepted(
    gateway: MercadoPagoClient, payments: SQLitePaymentStore, dispatcher: WebhookDispatcher
) -> None:
    reconciler = PaymentReconciler(gateway, payments, dispatcher, webhook_secret="gw-secret")
    raw_body = _notification()
    result = await reconciler.reconcile(raw_body, _signed_headers("gw-secret", raw_body))
    assert result.status is ReconciliationStatus.IGNORED


@pytest.mark.parametrize(
    "headers",
    [{}, {"x-signature": "ts=1,v1=deadbeef"}, {"x-signature": "ts=1,v1=éabc"}],
)
async def test_signature_rejected(
    gateway: MercadoPagoClient, payments: SQLitePaymentStore, dispatcher: WebhookDispatcher, headers
) -> None:
    reconciler = PaymentReconciler(gateway, payments, dispatcher, webhook_secret="gw-secret")
    with pytest.raises(InvalidSignatureError):
        await reconciler.reconcile(_notification(), headers)


async def test_signature_skip_validation(
    gateway: MercadoPagoClient, payments: SQLitePaymentStore, dispatcher: WebhookDispatcher
) -> None:
    reconciler = PaymentReconciler(
        gateway, payments, dispatcher, webhook_secret="gw-secret", skip_signature_validation=True
    )
    result = await reconciler.reconcile(_notification(), {"x-signature": "bogus"})
    assert result.status is ReconciliationStatus.IGNORED


def test_parse_envelope() -> None:
    assert parse_envelope(b'{"type":"payment"}') == {"type": "payment"}
    assert parse_envelope(b"{") == {}
    assert parse_envelope(b'"text"') == {}
