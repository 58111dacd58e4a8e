"""Credit ledger and usage accounting helpers."""

from __future__ import annotations

import csv
import io
import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from fastapi import HTTPException
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from services.pricing import quote_course, quote_presentation

logger = logging.getLogger(__name__)


class ProfileNotFound(LookupError):
    """Raised when a user has no credit account row."""


@dataclass(frozen=True)
class JobRef:
    """Identifies the generation job a ledger entry belongs to."""

    job_id: str
    kind: str = "generation"

    @classmethod
    def new(cls, kind: str = "generation") -> "JobRef":
        return cls(job_id=str(uuid.uuid4()), kind=kind)

    def idempotency_key(self, action: str) -> str:
        return f"{self.kind}:{self.job_id}:{action}"


class LedgerGateway(Protocol):
    async def get_balance(self, user_id: str) -> int: ...

    async def debit(self, user_id: str, amount: int, job_ref: JobRef, description: str) -> bool: ...

    async def refund(self, user_id: str, amount: int, job_ref: JobRef, description: str) -> bool: ...


class SqlLedgerGateway:
    """Ledger backed by ``credit_accounts`` + ``credit_transactions``.

    Each mutation updates the account row and appends its transaction in one
    database transaction. The account row carries a ``version`` column; the
    update is conditional on the version read, so two concurrent writers for
    the same user cannot both apply a change computed from the same balance.
    Mutations are keyed by ``JobRef`` so a retried debit or refund is applied
    at most once.
    """

    def __init__(self, db: AsyncSession, *, max_write_attempts: Optional[int] = None) -> None:
        self.db = db
        self.max_write_attempts = max(int(max_write_attempts or settings.LEDGER_MAX_WRITE_ATTEMPTS), 1)

    async def get_balance(self, user_id: str) -> int:
        result = await self.db.execute(select(CreditAccount.balance).where(CreditAccount.user_id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise ProfileNotFound(f"No credit account for user {user_id}")
        return int(balance)

    async def debit(self, user_id: str, amount: int, job_ref: JobRef, description: str) -> bool:
        if int(amount) <= 0:
            raise ValueError("debit amount must be positive")
        entry = await self.record_entry(
            user_id,
            delta=-int(amount),
            entry_type="consumption",
            related_entity_id=job_ref.job_id,
            description=description,
            idempotency_key=job_ref.idempotency_key("debit"),
        )
        return entry is not None

    async def refund(self, user_id: str, amount: int, job_ref: JobRef, description: str) -> bool:
        if int(amount) <= 0:
            raise ValueError("refund amount must be positive")
        entry = await self.record_entry(
            user_id,
            delta=int(amount),
            entry_type="adjustment",
            related_entity_id=job_ref.job_id,
            description=description,
            idempotency_key=job_ref.idempotency_key("refund"),
        )
        return entry is not None

    async def _existing_entry(self, idempotency_key: Optional[str]) -> Optional[CreditTransaction]:
        if not idempotency_key:
            return None
        result = await self.db.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _replay_for(existing: CreditTransaction, user_id: str) -> Optional[CreditTransaction]:
        """An idempotency key only replays for the user that recorded it."""
        if existing.user_id != user_id:
            logger.error(
                "Ledger entry %s belongs to another user; rejecting write for user %s",
                existing.idempotency_key,
                user_id,
            )
            return None
        logger.info("Ledger entry %s already recorded; skipping replay", existing.idempotency_key)
        return existing

    async def record_entry(
        self,
        user_id: str,
        *,
        delta: int,
        entry_type: str,
        related_entity_id: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        clamp_at_zero: bool = False,
    ) -> Optional[CreditTransaction]:
        if entry_type not in TRANSACTION_TYPES:
            raise ValueError(f"Unknown transaction type: {entry_type}")

        for attempt in range(1, self.max_write_attempts + 1):
            try:
                existing = await self._existing_entry(idempotency_key)
                if existing is not None:
                    return self._replay_for(existing, user_id)

                row = (
                    await self.db.execute(
                        select(CreditAccount.balance, CreditAccount.version).where(CreditAccount.user_id == user_id)
                    )
                ).one_or_none()
                if row is None:
                    logger.error("Ledger write for user %s rejected: no credit account", user_id)
                    return None

                current_balance, version = int(row.balance), int(row.version)
                applied_delta = max(delta, -current_balance) if clamp_at_zero else delta
                next_balance = current_balance + applied_delta
                if next_balance < 0:
                    logger.warning(
                        "Ledger write for user %s rejected: balance %s cannot cover %s",
                        user_id,
                        current_balance,
                        -delta,
                    )
                    return None

                result = await self.db.execute(
                    update(CreditAccount)
                    .where(CreditAccount.user_id == user_id, CreditAccount.version == version)
                    .values(balance=next_balance, version=version + 1, updated_at=func.now())
                )
                if result.rowcount != 1:
                    await self.db.rollback()
                    logger.warning(
                        "Ledger write conflict for user %s (attempt %s/%s)",
                        user_id,
                        attempt,
                        self.max_write_attempts,
                    )
                    continue

                entry = CreditTransaction(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    type=entry_type,
                    amount=int(applied_delta),
                    balance_after=next_balance,
                    related_entity_id=related_entity_id,
                    description=description,
                    idempotency_key=idempotency_key,
                )
                self.db.add(entry)
                await self.db.commit()
                logger.info(
                    "Ledger %s of %s credits for user %s (ref=%s); balance now %s",
                    entry_type,
                    applied_delta,
                    user_id,
                    related_entity_id,
                    next_balance,
                )
                return entry
            except IntegrityError:
                # A concurrent writer committed the same idempotency key first.
                await self.db.rollback()
                existing = await self._existing_entry(idempotency_key)
                if existing is not None:
                    return self._replay_for(existing, user_id)
                logger.warning("Ledger integrity conflict for user %s (attempt %s)", user_id, attempt)
            except SQLAlchemyError as exc:
                await self.db.rollback()
                logger.error("Ledger write failed for user %s: %s", user_id, exc)
                return None

        logger.error("Ledger write for user %s abandoned after %s attempts", user_id, self.max_write_attempts)
        return None


async def ensure_credit_account(user_id: str, db: AsyncSession) -> int:
    """Create the user's credit account with its welcome grant if missing; return the balance."""
    gateway = SqlLedgerGateway(db)
    try:
        return await gateway.get_balance(user_id)
    except ProfileNotFound:
        pass

    db.add(CreditAccount(user_id=user_id, balance=0, version=0))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return await gateway.get_balance(user_id)

    signup_credits = max(int(settings.SIGNUP_CREDITS), 0)
    if signup_credits:
        await gateway.record_entry(
            user_id,
            delta=signup_credits,
            entry_type="adjustment",
            description="Welcome credits",
            idempotency_key=f"signup:{user_id}",
        )
    return await gateway.get_balance(user_id)


async def add_credit_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    provider: str,
    billing_reference: str,
    reason: str = "Credit purchase",
) -> Dict[str, Any]:
    grant = max(int(credits), 0)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    await ensure_credit_account(user_id, db)
    entry = await SqlLedgerGateway(db).record_entry(
        user_id,
        delta=grant,
        entry_type="purchase",
        related_entity_id=billing_reference,
        description=f"{reason} ({provider})",
        idempotency_key=f"purchase:{provider}:{user_id}:{billing_reference}",
    )
    if entry is None:
        raise HTTPException(status_code=500, detail="Failed to record credit purchase.")
    return {"balance_after": entry.balance_after, "transaction_id": entry.id}


async def apply_credit_adjustment(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Manual balance correction; negative adjustments never take the balance below zero."""
    if int(amount) == 0:
        raise HTTPException(status_code=422, detail="amount must be non-zero")
    await ensure_credit_account(user_id, db)
    sign = "+" if amount > 0 else ""
    entry = await SqlLedgerGateway(db).record_entry(
        user_id,
        delta=int(amount),
        entry_type="adjustment",
        description=description or f"Credit adjustment: {sign}{int(amount)} credits",
        clamp_at_zero=True,
    )
    if entry is None:
        raise HTTPException(status_code=500, detail="Failed to record credit adjustment.")
    return {"balance_after": entry.balance_after, "applied": entry.amount, "transaction_id": entry.id}


def _serialize_entry(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "related_entity_id": entry.related_entity_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _filtered_transactions(user_id: str, type_filter: Optional[str], search: Optional[str]):
    query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if type_filter and type_filter != "all":
        if type_filter not in TRANSACTION_TYPES:
            raise HTTPException(status_code=422, detail=f"Unknown transaction type: {type_filter}")
        query = query.where(CreditTransaction.type == type_filter)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                CreditTransaction.description.ilike(pattern),
                CreditTransaction.related_entity_id.ilike(pattern),
            )
        )
    return query


async def list_credit_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    type_filter: Optional[str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), 100)
    query = _filtered_transactions(user_id, type_filter, search)

    total = int((await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0)
    result = await db.execute(
        query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "transactions": [_serialize_entry(entry) for entry in result.scalars().all()],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


async def export_credit_transactions_csv(
    user_id: str,
    db: AsyncSession,
    *,
    type_filter: Optional[str] = None,
    search: Optional[str] = None,
) -> str:
    query = _filtered_transactions(user_id, type_filter, search)
    result = await db.execute(query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()))

    buffer = io.StringIO()
    fieldnames = ["date", "type", "description", "amount", "balance_after", "related_id"]
    writer = csv.DictWriter(buffer, fieldnames=fieldnames)
    writer.writeheader()
    for entry in result.scalars().all():
        writer.writerow(
            {
                "date": entry.created_at.isoformat() if entry.created_at else "",
                "type": entry.type,
                "description": entry.description or "",
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "related_id": entry.related_entity_id or "",
            }
        )
    return buffer.getvalue()


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await ensure_credit_account(user_id, db)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": balance,
        "signup_credits": max(int(settings.SIGNUP_CREDITS), 0),
        "costs": {
            "minimum": max(int(settings.MINIMUM_CREDIT_COST), 0),
            "course_default": quote_course(
                settings.DEFAULT_MAX_CHAPTERS, settings.DEFAULT_MAX_LESSONS_PER_CHAPTER
            ).cost,
            "presentation_10_slides": quote_presentation(10).cost,
            "image_addon": max(int(settings.CREDITS_IMAGE_ADDON), 0),
        },
        "recent_entries": [_serialize_entry(entry) for entry in entries],
    }
