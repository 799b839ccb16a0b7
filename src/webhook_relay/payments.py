import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import aiosqlite


class PaymentStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


# A stale "pending" notification never moves a payment out of these.
NO_RETURN_TO_PENDING = (
    PaymentStatus.SUCCEEDED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELED,
    PaymentStatus.REFUNDED,
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Payment:
    id: str
    user_id: str
    course_id: str
    amount: float
    currency: str
    status: PaymentStatus
    gateway: str
    external_reference: str | None
    metadata: dict[str, Any]
    created_at: str
    updated_at: str


@dataclass
class Enrollment:
    id: str
    user_id: str
    course_id: str
    enrolled_at: str
    progress: int


_PAYMENT_COLUMNS = (
    "id,user_id,course_id,amount,currency,status,gateway,external_reference,metadata,created_at,updated_at"
)


def _row_to_payment(row: aiosqlite.Row) -> Payment:
    values = list(row)
    values[5] = PaymentStatus(values[5])
    values[8] = json.loads(values[8])
    return Payment(*values)


class SQLitePaymentStore:
    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create(
        self,
        user_id: str,
        course_id: str,
        amount: float,
        gateway: str,
        currency: str = "BRL",
        external_reference: str | None = None,
        metadata: dict[str, Any] | None = None,
        payment_id: str | None = None,
    ) -> Payment:
        now = _now()
        payment_id = payment_id or str(uuid.uuid4())
        await self._conn.execute(
            f"INSERT INTO payments({_PAYMENT_COLUMNS}) VALUES(?,?,?,?,?,'pending',?,?,?,?,?)",
            (
                payment_id,
                user_id,
                course_id,
                amount,
                currency,
                gateway,
                external_reference,
                json.dumps(metadata or {}),
                now,
                now,
            ),
        )
        await self._conn.commit()
        return await self.get(payment_id)

    async def get(self, payment_id: str) -> Payment | None:
        async with self._conn.execute(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id=?", (payment_id,)) as cursor:
            row = await cursor.fetchone()
        return _row_to_payment(row) if row else None

    async def find_by_gateway_reference(
        self,
        gateway: str,
        gateway_payment_id: str,
        external_reference: str | None = None,
    ) -> Payment | None:
        async with self._conn.execute(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE gateway=?"
            " AND (CAST(json_extract(metadata,'$.gateway_payment_id') AS TEXT)=?"
            " OR external_reference=? OR external_reference=?)"
            " ORDER BY CAST(json_extract(metadata,'$.gateway_payment_id') AS TEXT) IS ? DESC, created_at LIMIT 1",
            (gateway, gateway_payment_id, gateway_payment_id, external_reference, gateway_payment_id),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_payment(row) if row else None

    async def apply_status(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        metadata: dict[str, Any],
    ) -> Payment | None:
        # One conditional UPDATE; None when nothing changed or the move is refused.
        patch = json.dumps({k: v for k, v in metadata.items() if v is not None}, default=str)
        guard = ",".join("?" for _ in NO_RETURN_TO_PENDING)
        cursor = await self._conn.execute(
            "UPDATE payments SET status=?, metadata=json_patch(metadata, ?), updated_at=?"
            " WHERE id=? AND status<>?"
            f" AND NOT (?='pending' AND status IN ({guard}))",
            (
                str(new_status),
                patch,
                _now(),
                payment_id,
                str(new_status),
                str(new_status),
                *(str(status) for status in NO_RETURN_TO_PENDING),
            ),
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(payment_id)

    async def create_enrollment(self, user_id: str, course_id: str) -> Enrollment | None:
        """Insert an enrollment; None when the pair is already enrolled."""
        enrollment = Enrollment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            course_id=course_id,
            enrolled_at=_now(),
            progress=0,
        )
        try:
            await self._conn.execute(
                "INSERT INTO enrollments(id,user_id,course_id,enrolled_at,progress) VALUES(?,?,?,?,?)",
                (enrollment.id, enrollment.user_id, enrollment.course_id, enrollment.enrolled_at, enrollment.progress),
            )
            await self._conn.commit()
        except aiosqlite.IntegrityError:
            return None
        return enrollment

    async def get_enrollment(self, user_id: str, course_id: str) -> Enrollment | None:
        async with self._conn.execute(
            "SELECT id,user_id,course_id,enrolled_at,progress FROM enrollments WHERE user_id=? AND course_id=?",
            (user_id, course_id),
        ) as cursor:
            row = await cursor.fetchone()
        return Enrollment(*row) if row else None
