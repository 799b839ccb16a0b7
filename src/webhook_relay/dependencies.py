from functools import lru_cache

import aiosqlite
import httpx
from fastapi import Depends, Header, HTTPException, Request

from webhook_relay.config import Settings
from webhook_relay.dispatcher import WebhookDispatcher
from webhook_relay.gateway import MercadoPagoClient
from webhook_relay.payments import SQLitePaymentStore
from webhook_relay.reconciler import PaymentReconciler
from webhook_relay.store import SQLiteDeliveryLogStore, SQLiteSubscriptionStore


@lru_cache
def get_settings() -> Settings:
    return Settings()


async def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_db(request: Request) -> aiosqlite.Connection:
    return request.app.state.db


async def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


async def get_subscription_store(
    db: aiosqlite.Connection = Depends(get_db),
) -> SQLiteSubscriptionStore:
    return SQLiteSubscriptionStore(db)


async def get_log_store(
    db: aiosqlite.Connection = Depends(get_db),
) -> SQLiteDeliveryLogStore:
    return SQLiteDeliveryLogStore(db)


async def get_payment_store(
    db: aiosqlite.Connection = Depends(get_db),
) -> SQLitePaymentStore:
    return SQLitePaymentStore(db)


async def get_dispatcher(
    http: httpx.AsyncClient = Depends(get_http_client),
    subscriptions: SQLiteSubscriptionStore = Depends(get_subscription_store),
    logs: SQLiteDeliveryLogStore = Depends(get_log_store),
    settings: Settings = Depends(get_app_settings),
) -> WebhookDispatcher:
    return WebhookDispatcher(
        http,
        subscriptions,
        logs,
        timeout=settings.webhook_timeout,
        response_body_limit=settings.response_body_limit,
        user_agent=settings.webhook_user_agent,
    )


async def get_gateway(
    http: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_app_settings),
) -> MercadoPagoClient:
    return MercadoPagoClient(
        http,
        settings.mercadopago_access_token,
        settings.mercadopago_api_url,
        timeout=settings.webhook_timeout,
    )


async def get_reconciler(
    gateway: MercadoPagoClient = Depends(get_gateway),
    payments: SQLitePaymentStore = Depends(get_payment_store),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_app_settings),
) -> PaymentReconciler:
    return PaymentReconciler(
        gateway,
        payments,
        dispatcher,
        webhook_secret=settings.mercadopago_webhook_secret,
        skip_signature_validation=settings.mercadopago_skip_signature_validation,
        notification_path=settings.mercadopago_notification_path,
    )


async def require_admin(
    authorization: str = Header(default=""),
    settings: Settings = Depends(get_app_settings),
) -> None:
    token = authorization.removeprefix("Bearer ").strip()
    if not settings.admin_token or token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
