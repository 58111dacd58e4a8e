"""Billing and credits router."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, ensure_user_scope, get_admin_context, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import (
    add_credit_purchase,
    apply_credit_adjustment,
    export_credit_transactions_csv,
    get_credit_summary,
    list_credit_transactions,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = Field(default=None, max_length=128)


class CreditAdjustmentRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=-100000, le=100000)
    description: Optional[str] = Field(default=None, max_length=500)


async def _ensure_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_user(db, scoped_user_id)
    return await get_credit_summary(scoped_user_id, db)


@router.get("/transactions")
async def credit_transactions(
    user_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    type: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=200),
    export: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_user(db, scoped_user_id)

    if export:
        csv_text = await export_credit_transactions_csv(scoped_user_id, db, type_filter=type, search=search)
        return Response(
            content=csv_text,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="credit-transactions.csv"'},
        )

    return await list_credit_transactions(
        scoped_user_id,
        db,
        page=page,
        limit=limit,
        type_filter=type,
        search=search,
    )


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id)

    billing_reference = request.billing_reference or f"manual-{uuid.uuid4()}"
    result = await add_credit_purchase(
        user_id=scoped_user_id,
        db=db,
        credits=request.credits,
        provider="manual",
        billing_reference=billing_reference,
    )
    return {
        "ok": True,
        "credits_added": request.credits,
        "balance_after": result.get("balance_after", 0),
        "transaction_id": result.get("transaction_id"),
    }


@router.post("/adjustments")
async def credit_adjustment(
    request: CreditAdjustmentRequest,
    _rate_limit: None = Depends(rate_limit("billing_adjustment", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, request.user_id)
    result = await apply_credit_adjustment(
        request.user_id,
        db,
        amount=request.amount,
        description=request.description,
    )
    logger.info("Admin %s adjusted credits of %s by %s", auth.user_id, request.user_id, result["applied"])
    return {"ok": True, "user_id": request.user_id, **result}
