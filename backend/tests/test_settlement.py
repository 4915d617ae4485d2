from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select

from spl.models import Contest, ContestParticipant, ContestScore, Team, Transaction, User
from spl.settlement import distribute_prizes, payout_pool, prize_for_rank, refund_entries
from spl.wallet import charge_entry_fee, get_or_create_wallet, grant_bonus


def make_contest(db, entry_fee: float = 100, max_participants: int = 10) -> Contest:
    now = datetime.utcnow()
    contest = Contest(
        title="Settlement Cup",
        description="Contest used by settlement tests.",
        contest_type="tournament",
        difficulty="beginner",
        entry_fee=entry_fee,
        prize_pool=entry_fee * max_participants,
        max_participants=max_participants,
        current_participants=0,
        status="live",
        first_place_pct=50,
        second_place_pct=25,
        third_place_pct=10,
        platform_fee_pct=15,
        team_building_end_time=now - timedelta(hours=2),
        start_time=now - timedelta(hours=1),
        end_time=now + timedelta(hours=1),
    )
    db.add(contest)
    db.flush()
    return contest


def enter(db, contest: Contest, username: str, rank: int | None) -> User:
    user = User(username=username, role="user")
    db.add(user)
    db.flush()
    grant_bonus(db, user.id, Decimal("1000"))
    team = Team(user_id=user.id, name=f"{username} XI", total_value=0)
    db.add(team)
    db.flush()
    charge_entry_fee(db, user.id, contest)
    participant = ContestParticipant(contest_id=contest.id, user_id=user.id, team_id=team.id, joined_at=datetime.utcnow())
    db.add(participant)
    db.flush()
    db.add(ContestScore(contest_id=contest.id, participant_id=participant.id, current_rank=rank, current_points=0))
    contest.current_participants = int(contest.current_participants or 0) + 1
    db.flush()
    return user


def balance(db, user: User) -> Decimal:
    return Decimal(str(get_or_create_wallet(db, user.id).balance))


def test_payout_pool_is_capped_by_fees_collected(db):
    contest = make_contest(db, entry_fee=100, max_participants=10)
    contest.current_participants = 4
    assert payout_pool(contest) == Decimal("400")
    contest.current_participants = 50
    assert payout_pool(contest) == Decimal("1000")


def test_free_contest_pays_advertised_pool(db):
    contest = make_contest(db, entry_fee=0)
    contest.prize_pool = 500
    assert payout_pool(contest) == Decimal("500")
    assert prize_for_rank(contest, 1) == Decimal("250.00")


def test_prize_for_rank_rounds_down_to_cents(db):
    contest = make_contest(db)
    contest.third_place_pct = 7
    assert prize_for_rank(contest, 3, pool=Decimal("333.33")) == Decimal("23.33")
    assert prize_for_rank(contest, 4, pool=Decimal("333.33")) == Decimal("0")


def test_distribute_prizes_credits_top_three_once(db):
    contest = make_contest(db, entry_fee=100)
    users = [enter(db, contest, name, rank) for name, rank in (("ann", 1), ("ben", 2), ("cat", 3), ("dan", 4))]

    result = distribute_prizes(db, contest)
    assert result.total_paid == Decimal("340.00")
    assert result.positions_paid == 3
    assert [balance(db, user) for user in users] == [Decimal("1100"), Decimal("1000"), Decimal("940"), Decimal("900")]

    again = distribute_prizes(db, contest)
    assert again.total_paid == Decimal("0")
    wins = db.execute(
        select(func.count()).select_from(Transaction).where(Transaction.type == "contest_win")
    ).scalar_one()
    assert wins == 3


def test_refund_entries_is_idempotent(db):
    contest = make_contest(db, entry_fee=100)
    users = [enter(db, contest, name, None) for name in ("ann", "ben")]

    first = refund_entries(db, contest, reason="Cancelled")
    assert first.total_refunded == Decimal("200")
    assert first.users_refunded == 2
    assert all(balance(db, user) == Decimal("1000") for user in users)

    second = refund_entries(db, contest)
    assert second.users_refunded == 0
