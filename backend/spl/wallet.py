from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .models import Contest, PaymentMethod, Transaction, Wallet, WithdrawalRequest
from .notifications import create_notification


WELCOME_BONUS = Decimal(os.environ.get("WELCOME_BONUS", "1000"))
MAX_DEPOSIT_AMOUNT = Decimal(os.environ.get("MAX_DEPOSIT_AMOUNT", "100000"))
MIN_WITHDRAWAL_AMOUNT = Decimal(os.environ.get("MIN_WITHDRAWAL_AMOUNT", "100"))

TRANSACTION_TYPES = ("deposit", "withdrawal", "contest_entry", "contest_win", "refund", "bonus")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "cancelled")
PAYMENT_METHOD_TYPES = ("card", "upi", "netbanking", "wallet")
WITHDRAWAL_STATUSES = ("pending", "processing", "completed", "rejected")


@dataclass
class TransactionSummary:
    total_deposits: Decimal
    total_withdrawals: Decimal
    total_winnings: Decimal
    total_entry_fees: Decimal


def dec(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def available_balance(wallet: Wallet) -> Decimal:
    return dec(wallet.balance) - dec(wallet.locked_balance)


def get_or_create_wallet(db: Session, user_id: int, for_update: bool = False) -> Wallet:
    stmt = select(Wallet).where(Wallet.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    wallet = db.execute(stmt).scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(
            user_id=user_id,
            balance=0.0,
            locked_balance=0.0,
            total_deposited=0.0,
            total_withdrawn=0.0,
            total_winnings=0.0,
        )
        db.add(wallet)
        db.flush()
    return wallet


def _record(
    db: Session,
    user_id: int,
    type: str,
    amount: Decimal,
    description: str,
    status: str = "completed",
    contest_id: int | None = None,
    payment_method_id: int | None = None,
    reference_id: str | None = None,
) -> Transaction:
    tx = Transaction(
        user_id=user_id,
        type=type,
        status=status,
        amount=float(amount),
        description=description,
        contest_id=contest_id,
        payment_method_id=payment_method_id,
        reference_id=reference_id,
        created_at=datetime.utcnow(),
    )
    db.add(tx)
    db.flush()
    return tx


def grant_bonus(db: Session, user_id: int, amount: Decimal, description: str = "Welcome bonus") -> Transaction | None:
    if amount <= 0:
        return None
    wallet = get_or_create_wallet(db, user_id, for_update=True)
    wallet.balance = float(dec(wallet.balance) + amount)
    return _record(db, user_id, "bonus", amount, description)


def get_payment_method_or_raise(db: Session, user_id: int, payment_method_id: int) -> PaymentMethod:
    method = db.execute(
        select(PaymentMethod).where(PaymentMethod.id == payment_method_id, PaymentMethod.user_id == user_id)
    ).scalar_one_or_none()
    if method is None:
        raise HTTPException(404, "Payment method not found")
    return method


def deposit(
    db: Session,
    user_id: int,
    amount: Decimal,
    payment_method_id: int | None = None,
    reference_id: str | None = None,
    description: str = "Wallet deposit",
) -> Transaction:
    if amount <= 0:
        raise HTTPException(400, "Deposit amount must be > 0")
    if amount > MAX_DEPOSIT_AMOUNT:
        raise HTTPException(400, f"Deposit amount cannot exceed {float(MAX_DEPOSIT_AMOUNT):.2f}")

    method = get_payment_method_or_raise(db, user_id, payment_method_id) if payment_method_id else None
    wallet = get_or_create_wallet(db, user_id, for_update=True)
    wallet.balance = float(dec(wallet.balance) + amount)
    wallet.total_deposited = float(dec(wallet.total_deposited) + amount)
    if method is not None:
        method.last_used_at = datetime.utcnow()

    tx = _record(
        db,
        user_id,
        "deposit",
        amount,
        description,
        payment_method_id=payment_method_id,
        reference_id=reference_id,
    )
    create_notification(
        db,
        user_id=user_id,
        title="Deposit successful",
        message=f"${float(amount):,.2f} was added to your wallet.",
        type="payment",
        link="/wallet",
    )
    return tx


def request_withdrawal(
    db: Session,
    user_id: int,
    amount: Decimal,
    payment_method_id: int | None = None,
    bank_details: dict | None = None,
) -> WithdrawalRequest:
    if amount < MIN_WITHDRAWAL_AMOUNT:
        raise HTTPException(400, f"Minimum withdrawal is {float(MIN_WITHDRAWAL_AMOUNT):.2f}")
    if payment_method_id:
        get_payment_method_or_raise(db, user_id, payment_method_id)

    wallet = get_or_create_wallet(db, user_id, for_update=True)
    available = available_balance(wallet)
    if amount > available:
        raise HTTPException(
            400,
            f"Insufficient available balance. Need {float(amount):.2f}, have {float(available):.2f}",
        )

    wallet.locked_balance = float(dec(wallet.locked_balance) + amount)
    tx = _record(
        db,
        user_id,
        "withdrawal",
        -amount,
        "Withdrawal request",
        status="pending",
        payment_method_id=payment_method_id,
    )
    request = WithdrawalRequest(
        user_id=user_id,
        amount=float(amount),
        status="pending",
        payment_method_id=payment_method_id,
        bank_details=bank_details,
        transaction_id=tx.id,
        created_at=datetime.utcnow(),
    )
    db.add(request)
    db.flush()
    return request


def process_withdrawal(db: Session, request_id: int, approve: bool) -> WithdrawalRequest:
    request = db.execute(
        select(WithdrawalRequest).where(WithdrawalRequest.id == request_id).with_for_update()
    ).scalar_one_or_none()
    if request is None:
        raise HTTPException(404, "Withdrawal request not found")
    if request.status not in {"pending", "processing"}:
        raise HTTPException(400, f"Withdrawal request is already {request.status}")

    amount = dec(request.amount)
    wallet = get_or_create_wallet(db, request.user_id, for_update=True)
    tx = db.get(Transaction, request.transaction_id) if request.transaction_id else None

    wallet.locked_balance = float(max(Decimal("0"), dec(wallet.locked_balance) - amount))
    if approve:
        wallet.balance = float(dec(wallet.balance) - amount)
        wallet.total_withdrawn = float(dec(wallet.total_withdrawn) + amount)
        request.status = "completed"
        if tx is not None:
            tx.status = "completed"
        title, message = "Withdrawal completed", f"${float(amount):,.2f} was sent to your account."
    else:
        request.status = "rejected"
        if tx is not None:
            tx.status = "cancelled"
        title, message = "Withdrawal rejected", f"Your withdrawal of ${float(amount):,.2f} was rejected."
    request.processed_at = datetime.utcnow()

    create_notification(db, user_id=request.user_id, title=title, message=message, type="payment", link="/wallet")
    logger.info("Withdrawal {} {} for user {}", request.id, request.status, request.user_id)
    return request


def charge_entry_fee(db: Session, user_id: int, contest: Contest) -> Transaction | None:
    fee = dec(contest.entry_fee)
    if fee <= 0:
        return None
    wallet = get_or_create_wallet(db, user_id, for_update=True)
    if available_balance(wallet) < fee:
        raise HTTPException(400, "Insufficient wallet balance")
    wallet.balance = float(dec(wallet.balance) - fee)
    return _record(
        db,
        user_id,
        "contest_entry",
        -fee,
        f"Entry fee: {contest.title}",
        contest_id=contest.id,
    )


def credit_winnings(db: Session, user_id: int, contest: Contest, amount: Decimal, rank: int) -> Transaction:
    wallet = get_or_create_wallet(db, user_id, for_update=True)
    wallet.balance = float(dec(wallet.balance) + amount)
    wallet.total_winnings = float(dec(wallet.total_winnings) + amount)
    return _record(
        db,
        user_id,
        "contest_win",
        amount,
        f"Prize for rank #{rank}: {contest.title}",
        contest_id=contest.id,
    )


def refund(db: Session, user_id: int, contest: Contest, amount: Decimal, reason: str | None = None) -> Transaction:
    wallet = get_or_create_wallet(db, user_id, for_update=True)
    wallet.balance = float(dec(wallet.balance) + amount)
    description = f"Refund: {contest.title}"
    if reason:
        description = f"{description} ({reason})"
    return _record(db, user_id, "refund", amount, description, contest_id=contest.id)


def list_transactions(
    db: Session,
    user_id: int,
    type: str | None = None,
    status: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Transaction], int]:
    filters = [Transaction.user_id == user_id]
    if type:
        filters.append(Transaction.type == type)
    if status:
        filters.append(Transaction.status == status)
    if start_date:
        filters.append(Transaction.created_at >= start_date)
    if end_date:
        filters.append(Transaction.created_at <= end_date)

    total = int(db.execute(select(func.count()).select_from(Transaction).where(*filters)).scalar_one())
    rows = db.execute(
        select(Transaction)
        .where(*filters)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return list(rows), total


def transaction_summary(db: Session, user_id: int) -> TransactionSummary:
    totals = dict(
        db.execute(
            select(Transaction.type, func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.user_id == user_id, Transaction.status == "completed")
            .group_by(Transaction.type)
        ).all()
    )
    return TransactionSummary(
        total_deposits=dec(totals.get("deposit")),
        total_withdrawals=abs(dec(totals.get("withdrawal"))),
        total_winnings=dec(totals.get("contest_win")),
        total_entry_fees=abs(dec(totals.get("contest_entry"))),
    )


def list_payment_methods(db: Session, user_id: int) -> list[PaymentMethod]:
    return list(
        db.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
        ).scalars()
    )


def add_payment_method(
    db: Session,
    user_id: int,
    type: str,
    name: str,
    details: dict | None,
    is_default: bool = False,
) -> PaymentMethod:
    if type not in PAYMENT_METHOD_TYPES:
        raise HTTPException(400, f"type must be one of: {', '.join(PAYMENT_METHOD_TYPES)}")
    if is_default:
        db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )
    method = PaymentMethod(
        user_id=user_id,
        type=type,
        name=name.strip(),
        details=details or {},
        is_default=is_default,
        created_at=datetime.utcnow(),
    )
    db.add(method)
    db.flush()
    return method


def list_withdrawal_requests(db: Session, user_id: int) -> list[WithdrawalRequest]:
    return list(
        db.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.user_id == user_id)
            .order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
        ).scalars()
    )
