import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import aiosqlite


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Subscription:
    id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    secret_key: str | None
    created_at: str
    updated_at: str


@dataclass
class DeliveryLog:
    id: str
    webhook_id: str
    event_type: str
    payload: dict[str, Any]
    response_status: int | None
    response_body: str | None
    error_message: str | None
    is_success: bool
    created_at: str


_SUBSCRIPTION_COLUMNS = "id,name,url,events,is_active,secret_key,created_at,updated_at"
_LOG_COLUMNS = (
    "id,webhook_id,event_type,payload,response_status,response_body,error_message,is_success,created_at"
)


def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
    id_, name, url, events, is_active, secret_key, created_at, updated_at = row
    return Subscription(id_, name, url, json.loads(events), bool(is_active), secret_key, created_at, updated_at)


def _row_to_log(row: aiosqlite.Row) -> DeliveryLog:
    id_, webhook_id, event_type, payload, status, body, error, is_success, created_at = row
    return DeliveryLog(id_, webhook_id, event_type, json.loads(payload), status, body, error, bool(is_success), created_at)


class SQLiteSubscriptionStore:
    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create(
        self,
        name: str,
        url: str,
        events: list[str],
        is_active: bool = True,
        secret_key: str | None = None,
    ) -> Subscription:
        now = _now()
        subscription_id = str(uuid.uuid4())
        await self._conn.execute(
            f"INSERT INTO webhooks({_SUBSCRIPTION_COLUMNS}) VALUES(?,?,?,?,?,?,?,?)",
            (subscription_id, name, url, json.dumps(events), int(is_active), secret_key, now, now),
        )
        await self._conn.commit()
        return await self.get(subscription_id)

    async def update(
        self,
        subscription_id: str,
        name: str,
        url: str,
        events: list[str],
        is_active: bool,
        secret_key: str | None,
    ) -> Subscription | None:
        cursor = await self._conn.execute(
            "UPDATE webhooks SET name=?, url=?, events=?, is_active=?, secret_key=?, updated_at=? WHERE id=?",
            (name, url, json.dumps(events), int(is_active), secret_key, _now(), subscription_id),
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(subscription_id)

    async def delete(self, subscription_id: str) -> bool:
        cursor = await self._conn.execute("DELETE FROM webhooks WHERE id=?", (subscription_id,))
        await self._conn.commit()
        return cursor.rowcount > 0

    async def get(self, subscription_id: str) -> Subscription | None:
        async with self._conn.execute(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM webhooks WHERE id=?", (subscription_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_subscription(row) if row else None

    async def list_all(self) -> list[Subscription]:
        async with self._conn.execute(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM webhooks ORDER BY created_at DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def list_matching(self, event_type: str) -> list[Subscription]:
        async with self._conn.execute(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM webhooks"
            " WHERE is_active=1"
            " AND EXISTS (SELECT 1 FROM json_each(webhooks.events) WHERE json_each.value=?)"
            " ORDER BY created_at, id",
            (str(event_type),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]


class SQLiteDeliveryLogStore:
    """Append-only log of outbound delivery attempts."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append(
        self,
        webhook_id: str,
        event_type: str,
        payload: dict[str, Any],
        response_status: int | None,
        response_body: str | None,
        error_message: str | None,
        is_success: bool,
    ) -> DeliveryLog:
        entry = DeliveryLog(
            id=str(uuid.uuid4()),
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            response_status=response_status,
            response_body=response_body,
            error_message=error_message,
            is_success=is_success,
            created_at=_now(),
        )
        await self._conn.execute(
            f"INSERT INTO webhook_logs({_LOG_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?)",
            (
                entry.id,
                entry.webhook_id,
                entry.event_type,
                json.dumps(entry.payload, default=str),
                entry.response_status,
                entry.response_body,
                entry.error_message,
                int(entry.is_success),
                entry.created_at,
            ),
        )
        await self._conn.commit()
        return entry

    async def get(self, log_id: str) -> DeliveryLog | None:
        async with self._conn.execute(f"SELECT {_LOG_COLUMNS} FROM webhook_logs WHERE id=?", (log_id,)) as cursor:
            row = await cursor.fetchone()
        return _row_to_log(row) if row else None

    async def list_for_webhook(self, webhook_id: str, limit: int = 50, offset: int = 0) -> list[DeliveryLog]:
        async with self._conn.execute(
            f"SELECT {_LOG_COLUMNS} FROM webhook_logs WHERE webhook_id=?"
            " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (webhook_id, limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_log(row) for row in rows]
