import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from webhook_relay.config import Settings
from webhook_relay.dependencies import (
    get_app_settings,
    get_dispatcher,
    get_gateway,
    get_log_store,
    get_reconciler,
    get_subscription_store,
    require_admin,
)
from webhook_relay.dispatcher import WebhookDispatcher
from webhook_relay.gateway import InvalidSignatureError, MercadoPagoClient
from webhook_relay.metrics import RECONCILIATIONS_TOTAL
from webhook_relay.models import (
    DeliveryLogResponse,
    GatewayStatusResponse,
    ReconciliationResponse,
    SubscriptionRequest,
    SubscriptionResponse,
)
from webhook_relay.reconciler import PaymentReconciler
from webhook_relay.store import SQLiteDeliveryLogStore, SQLiteSubscriptionStore

logger = logging.getLogger(__name__)
router = APIRouter()
admin = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/webhooks/mercadopago")
async def mercadopago_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> JSONResponse:
    start = time.monotonic()
    raw_body = await request.body()
    try:
        result = await reconciler.reconcile(raw_body, request.headers)
    except InvalidSignatureError:
        logger.warning("Rejected gateway notification with invalid signature")
        return JSONResponse(content={"error": "Invalid signature"}, status_code=401)
    except Exception:
        RECONCILIATIONS_TOTAL.labels(outcome="error").inc()
        logger.exception("Gateway notification processing failed")
        return JSONResponse(content={"error": "Internal error processing webhook"}, status_code=500)
    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info("Gateway notification %s in %dms: %s", result.status, elapsed_ms, result.message)
    response = ReconciliationResponse(
        status=str(result.status),
        message=result.message,
        processing_time_ms=elapsed_ms,
    )
    return JSONResponse(content=response.model_dump(), status_code=200)


@admin.get("/webhooks/mercadopago/status")
async def mercadopago_status(
    gateway: MercadoPagoClient = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> GatewayStatusResponse:
    return GatewayStatusResponse(
        configured=gateway.configured,
        environment=gateway.environment,
        has_webhook_secret=settings.mercadopago_webhook_secret is not None,
        notification_path=settings.mercadopago_notification_path,
    )


@admin.get("/webhooks")
async def list_subscriptions(
    store: SQLiteSubscriptionStore = Depends(get_subscription_store),
) -> list[SubscriptionResponse]:
    return [SubscriptionResponse.from_subscription(s) for s in await store.list_all()]


@admin.post("/webhooks", status_code=201)
async def create_subscription(
    body: SubscriptionRequest,
    store: SQLiteSubscriptionStore = Depends(get_subscription_store),
) -> SubscriptionResponse:
    subscription = await store.create(
        name=body.name,
        url=str(body.url),
        events=body.events,
        is_active=body.is_active,
        secret_key=body.secret_key,
    )
    logger.info("Webhook %s registered -> %s", subscription.id, subscription.url)
    return SubscriptionResponse.from_subscription(subscription)


@admin.put("/webhooks/{webhook_id}")
async def update_subscription(
    webhook_id: str,
    body: SubscriptionRequest,
    store: SQLiteSubscriptionStore = Depends(get_subscription_store),
) -> SubscriptionResponse:
    subscription = await store.update(
        webhook_id,
        name=body.name,
        url=str(body.url),
        events=body.events,
        is_active=body.is_active,
        secret_key=body.secret_key,
    )
    if subscription is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return SubscriptionResponse.from_subscription(subscription)


@admin.delete("/webhooks/{webhook_id}")
async def delete_subscription(
    webhook_id: str,
    store: SQLiteSubscriptionStore = Depends(get_subscription_store),
) -> dict:
    if not await store.delete(webhook_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
    logger.info("Webhook %s deleted", webhook_id)
    return {"success": True}


@admin.get("/webhooks/{webhook_id}/logs")
async def list_logs(
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    logs: SQLiteDeliveryLogStore = Depends(get_log_store),
) -> list[DeliveryLogResponse]:
    return [DeliveryLogResponse.from_log(log) for log in await logs.list_for_webhook(webhook_id, limit, offset)]


@admin.post("/webhooks/logs/{log_id}/redeliver")
async def redeliver(
    log_id: str,
    logs: SQLiteDeliveryLogStore = Depends(get_log_store),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> DeliveryLogResponse:
    log = await logs.get(log_id)
    if log is None:
        raise HTTPException(status_code=404, detail="Delivery log not found")
    entry = await dispatcher.redeliver(log)
    if entry is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return DeliveryLogResponse.from_log(entry)


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/ready")
async def ready(request: Request) -> dict:
    if not request.app.state.ready:
        raise HTTPException(status_code=503)
    return {"status": "ok"}
