from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import Contest, ContestParticipant, ContestScore, Transaction
from .notifications import create_notification
from .wallet import credit_winnings, dec, refund


CENT = Decimal("0.01")


@dataclass
class PayoutResult:
    total_paid: Decimal
    users_credited: int
    positions_paid: int


@dataclass
class RefundResult:
    total_refunded: Decimal
    users_refunded: int


def prize_percentages(contest: Contest) -> list[tuple[int, Decimal]]:
    return [
        (1, dec(contest.first_place_pct)),
        (2, dec(contest.second_place_pct)),
        (3, dec(contest.third_place_pct)),
    ]


def payout_pool(contest: Contest) -> Decimal:
    """Advertised pool, capped by the fees actually collected when the contest is paid."""
    pool = dec(contest.prize_pool)
    fee = dec(contest.entry_fee)
    if fee > 0:
        pool = min(pool, fee * int(contest.current_participants or 0))
    return max(Decimal("0"), pool)


def prize_for_rank(contest: Contest, rank: int, pool: Decimal | None = None) -> Decimal:
    base = payout_pool(contest) if pool is None else pool
    for place, pct in prize_percentages(contest):
        if place == rank:
            return (base * pct / 100).quantize(CENT, rounding=ROUND_DOWN)
    return Decimal("0")


def distribute_prizes(db: Session, contest: Contest) -> PayoutResult:
    already_paid = db.execute(
        select(func.count())
        .select_from(Transaction)
        .where(Transaction.contest_id == contest.id, Transaction.type == "contest_win")
    ).scalar_one()
    if already_paid:
        return PayoutResult(total_paid=Decimal("0"), users_credited=0, positions_paid=0)

    pool = payout_pool(contest)
    rows = db.execute(
        select(ContestScore, ContestParticipant)
        .join(ContestParticipant, ContestParticipant.id == ContestScore.participant_id)
        .where(ContestScore.contest_id == contest.id, ContestScore.current_rank.is_not(None))
        .order_by(ContestScore.current_rank.asc())
    ).all()

    total_paid = Decimal("0")
    credited_users: set[int] = set()
    positions_paid = 0
    for score, participant in rows:
        rank = int(score.current_rank)
        payout = prize_for_rank(contest, rank, pool)
        if payout <= 0:
            continue

        credit_winnings(db, participant.user_id, contest, payout, rank)
        score.prize_amount = float(payout)
        create_notification(
            db,
            user_id=participant.user_id,
            title="You won a prize!",
            message=f"You finished #{rank} in {contest.title} and won ${float(payout):,.2f}.",
            type="achievement",
            link=f"/contests/{contest.id}",
        )

        total_paid += payout
        positions_paid += 1
        credited_users.add(participant.user_id)

    logger.info(
        "Contest {} paid {} across {} positions from pool {}",
        contest.id,
        total_paid,
        positions_paid,
        pool,
    )
    return PayoutResult(total_paid=total_paid, users_credited=len(credited_users), positions_paid=positions_paid)


def refund_entries(db: Session, contest: Contest, reason: str | None = None) -> RefundResult:
    entry_rows = db.execute(
        select(Transaction.user_id, func.sum(Transaction.amount))
        .where(
            Transaction.contest_id == contest.id,
            Transaction.type == "contest_entry",
            Transaction.status == "completed",
        )
        .group_by(Transaction.user_id)
    ).all()
    refunded_rows = db.execute(
        select(Transaction.user_id, func.sum(Transaction.amount))
        .where(
            Transaction.contest_id == contest.id,
            Transaction.type == "refund",
            Transaction.status == "completed",
        )
        .group_by(Transaction.user_id)
    ).all()
    refunded_by_user = {int(user_id): dec(total) for user_id, total in refunded_rows}

    total_refunded = Decimal("0")
    users_refunded = 0
    for user_id, paid_total in entry_rows:
        owed = abs(dec(paid_total)) - refunded_by_user.get(int(user_id), Decimal("0"))
        if owed <= 0:
            continue
        refund(db, int(user_id), contest, owed, reason)
        total_refunded += owed
        users_refunded += 1

    logger.info("Contest {} refunded {} to {} users", contest.id, total_refunded, users_refunded)
    return RefundResult(total_refunded=total_refunded, users_refunded=users_refunded)
