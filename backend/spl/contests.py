"""Contest lifecycle, discovery, entry and scoring."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .feed import CONTESTS_CHANNEL, queue_event
from .market import MarketDataService
from .models import (
    Contest,
    ContestFavorite,
    ContestParticipant,
    ContestRule,
    ContestScore,
    ContestStatusChange,
    ContestTag,
    Team,
    User,
)
from .notifications import create_notification, notify_users
from .scoring import RankedEntry, rank_entries, round_points, total_team_points
from .settlement import distribute_prizes, prize_percentages, refund_entries
from .team import StockPick, is_team_valid, validate_team
from .wallet import charge_entry_fee, dec


CONTEST_STATUSES = ("upcoming", "live", "completed", "cancelled")
CONTEST_TYPES = ("head-to-head", "tournament", "mega-contest")
DIFFICULTY_LEVELS = ("beginner", "intermediate", "advanced")

STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "upcoming": ("live", "cancelled"),
    "live": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

MIN_PARTICIPANTS_TO_START = 2
LEADERBOARD_LIMIT = 100
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100

SORTABLE_FIELDS = {
    "created_at": Contest.created_at,
    "start_time": Contest.start_time,
    "end_time": Contest.end_time,
    "entry_fee": Contest.entry_fee,
    "prize_pool": Contest.prize_pool,
    "current_participants": Contest.current_participants,
    "title": Contest.title,
}

TIMEFRAME_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}

AUTO_START_REASON = "Automatic start at scheduled time"
AUTO_COMPLETE_REASON = "Automatic completion at end time"


class ContestStatusError(ValueError):
    pass


def naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def contest_record(contest: Contest) -> dict[str, Any]:
    return {
        "id": int(contest.id),
        "title": str(contest.title),
        "status": str(contest.status),
        "current_participants": int(contest.current_participants or 0),
        "max_participants": int(contest.max_participants),
        "start_time": contest.start_time.isoformat(),
        "end_time": contest.end_time.isoformat(),
    }


def get_contest_or_404(db: Session, contest_id: int, for_update: bool = False) -> Contest:
    stmt = select(Contest).where(Contest.id == contest_id)
    if for_update:
        stmt = stmt.with_for_update()
    contest = db.execute(stmt).scalar_one_or_none()
    if contest is None:
        raise HTTPException(404, "Contest not found")
    return contest


def get_owned_team_or_raise(db: Session, user_id: int, team_id: int) -> Team:
    team = db.execute(select(Team).where(Team.id == team_id, Team.user_id == user_id)).scalar_one_or_none()
    if team is None:
        raise HTTPException(400, "Team not found or does not belong to you")
    return team


def ensure_team_complete(team: Team) -> None:
    """Reject a saved team that no longer passes the validation checklist."""
    rules = validate_team(team_picks(team), str(team.name))
    if not is_team_valid(rules):
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Team is not valid.",
                "rules": [asdict(rule) for rule in rules if not rule.is_valid],
            },
        )


def team_picks(team: Team) -> list[StockPick]:
    return [
        StockPick(
            symbol=str(stock.symbol),
            name=str(stock.name),
            price=float(stock.price),
            change=float(stock.change),
            change_percent=float(stock.change_percent),
            sector=stock.sector,
            role=str(stock.role),
            multiplier=float(stock.multiplier),
        )
        for stock in team.stocks
    ]


def participant_user_ids(db: Session, contest_id: int) -> list[int]:
    return [
        int(user_id)
        for user_id in db.execute(
            select(ContestParticipant.user_id)
            .where(ContestParticipant.contest_id == contest_id)
            .order_by(ContestParticipant.joined_at.asc(), ContestParticipant.id.asc())
        ).scalars()
    ]


# Status machine


def can_change_status(current: str, new_status: str) -> bool:
    return new_status in STATUS_TRANSITIONS.get(current, ())


def change_status(
    db: Session,
    contest: Contest,
    new_status: str,
    reason: str | None = None,
    changed_by: int | None = None,
    market: MarketDataService | None = None,
) -> ContestStatusChange:
    old_status = str(contest.status)
    if new_status not in CONTEST_STATUSES:
        raise ContestStatusError(f"Unknown status '{new_status}'.")
    if not can_change_status(old_status, new_status):
        raise ContestStatusError(f"Cannot change status from {old_status} to {new_status}")
    if new_status == "live" and int(contest.current_participants or 0) < MIN_PARTICIPANTS_TO_START:
        raise ContestStatusError(f"At least {MIN_PARTICIPANTS_TO_START} participants are required to go live")

    contest.status = new_status
    contest.updated_at = datetime.utcnow()
    change = ContestStatusChange(
        contest_id=contest.id,
        from_status=old_status,
        to_status=new_status,
        reason=reason,
        changed_by=changed_by,
        created_at=datetime.utcnow(),
    )
    db.add(change)
    db.flush()

    if new_status == "live":
        _on_contest_start(db, contest, market)
    elif new_status == "completed":
        _on_contest_complete(db, contest, market)
    elif new_status == "cancelled":
        _on_contest_cancel(db, contest, reason)

    queue_event(
        db,
        CONTESTS_CHANNEL,
        {
            "type": "UPDATE",
            "table": "contests",
            "record": contest_record(contest),
            "old_record": {"id": int(contest.id), "status": old_status},
        },
    )
    logger.info("Contest {} {} -> {} ({})", contest.id, old_status, new_status, reason or "no reason")
    return change


def _on_contest_start(db: Session, contest: Contest, market: MarketDataService | None) -> None:
    participants = db.execute(
        select(ContestParticipant)
        .where(ContestParticipant.contest_id == contest.id)
        .order_by(ContestParticipant.joined_at.asc(), ContestParticipant.id.asc())
    ).scalars().all()
    existing = {
        int(score.participant_id)
        for score in db.execute(select(ContestScore).where(ContestScore.contest_id == contest.id)).scalars()
    }
    for index, participant in enumerate(participants):
        if participant.id in existing:
            continue
        db.add(
            ContestScore(
                contest_id=contest.id,
                participant_id=participant.id,
                current_points=0.0,
                points_change=0.0,
                current_rank=index + 1,
                previous_rank=None,
                prize_amount=0.0,
                last_calculated=datetime.utcnow(),
            )
        )
    db.flush()
    if market is not None and participants:
        recalculate_scores(db, contest, market)

    notify_users(
        db,
        [int(participant.user_id) for participant in participants],
        title="Contest is live",
        message=f"{contest.title} has started. Teams are locked.",
        type="contest",
        link=f"/contests/{contest.id}",
    )


def _on_contest_complete(db: Session, contest: Contest, market: MarketDataService | None) -> None:
    if market is not None:
        recalculate_scores(db, contest, market)
    distribute_prizes(db, contest)
    notify_users(
        db,
        participant_user_ids(db, contest.id),
        title="Contest completed",
        message=f"{contest.title} has ended. Check the final leaderboard.",
        type="contest",
        link=f"/contests/{contest.id}",
    )


def _on_contest_cancel(db: Session, contest: Contest, reason: str | None) -> None:
    refund_entries(db, contest, reason)
    message = f"{contest.title} was cancelled."
    if reason:
        message = f"{message} Reason: {reason}"
    if dec(contest.entry_fee) > 0:
        message = f"{message} Your entry fee has been refunded."
    notify_users(
        db,
        participant_user_ids(db, contest.id),
        title="Contest cancelled",
        message=message,
        type="contest",
        link=f"/contests/{contest.id}",
    )


@dataclass
class StatusChangeOutcome:
    contest_id: int
    ok: bool
    from_status: str | None = None
    to_status: str | None = None
    error: str | None = None


def due_transitions(contests: Iterable[Contest], now: datetime) -> list[tuple[Contest, str, str]]:
    due: list[tuple[Contest, str, str]] = []
    for contest in contests:
        if contest.status == "upcoming":
            if now >= contest.start_time and int(contest.current_participants or 0) >= MIN_PARTICIPANTS_TO_START:
                due.append((contest, "live", AUTO_START_REASON))
        elif contest.status == "live":
            if now >= contest.end_time:
                due.append((contest, "completed", AUTO_COMPLETE_REASON))
    return due


def run_auto_status_updates(
    db: Session,
    now: datetime | None = None,
    market: MarketDataService | None = None,
) -> list[StatusChangeOutcome]:
    current = naive_utc(now) or datetime.utcnow()
    contests = db.execute(
        select(Contest).where(Contest.status.in_(("upcoming", "live"))).order_by(Contest.id.asc())
    ).scalars().all()

    outcomes: list[StatusChangeOutcome] = []
    for contest, new_status, reason in due_transitions(contests, current):
        old_status = str(contest.status)
        change_status(db, contest, new_status, reason=reason, market=market)
        outcomes.append(StatusChangeOutcome(contest.id, True, old_status, new_status))
    return outcomes


def bulk_change_status(
    db: Session,
    contest_ids: Sequence[int],
    new_status: str,
    reason: str | None = None,
    changed_by: int | None = None,
    market: MarketDataService | None = None,
) -> list[StatusChangeOutcome]:
    outcomes: list[StatusChangeOutcome] = []
    for contest_id in dict.fromkeys(contest_ids):
        contest = db.execute(select(Contest).where(Contest.id == contest_id).with_for_update()).scalar_one_or_none()
        if contest is None:
            outcomes.append(StatusChangeOutcome(contest_id, False, error="Contest not found"))
            continue
        old_status = str(contest.status)
        try:
            change_status(db, contest, new_status, reason=reason, changed_by=changed_by, market=market)
        except ContestStatusError as exc:
            outcomes.append(StatusChangeOutcome(contest_id, False, old_status, new_status, str(exc)))
            continue
        outcomes.append(StatusChangeOutcome(contest_id, True, old_status, new_status))
    return outcomes


# Creation


@dataclass
class ContestDraft:
    title: str
    description: str
    contest_type: str = "tournament"
    difficulty: str = "beginner"
    entry_fee: Decimal = Decimal("100")
    max_participants: int = 100
    team_building_end_time: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    first_place_pct: Decimal = Decimal("50")
    second_place_pct: Decimal = Decimal("25")
    third_place_pct: Decimal = Decimal("10")
    platform_fee_pct: Decimal = Decimal("15")
    featured: bool = False
    tags: list[str] = field(default_factory=list)
    rules: list[str] = field(default_factory=list)


def next_trading_day(now: datetime) -> date:
    """The next weekday after `now`."""
    candidate = now.date() + timedelta(days=1)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


def default_schedule(now: datetime) -> tuple[datetime, datetime, datetime]:
    day = next_trading_day(now)
    return (
        datetime.combine(day, time(9, 0)),
        datetime.combine(day, time(9, 30)),
        datetime.combine(day, time(15, 30)),
    )


def apply_draft_defaults(draft: ContestDraft, now: datetime) -> ContestDraft:
    team_end, start, end = default_schedule(now)
    draft.team_building_end_time = naive_utc(draft.team_building_end_time) or team_end
    draft.start_time = naive_utc(draft.start_time) or start
    draft.end_time = naive_utc(draft.end_time) or end
    if draft.contest_type == "head-to-head":
        draft.max_participants = 2
    return draft


def _check_range(errors: list[str], value: Decimal, low: int, high: int, label: str) -> None:
    if value < low:
        errors.append(f"{label} minimum {low}%")
    elif value > high:
        errors.append(f"{label} maximum {high}%")


def validate_contest_draft(draft: ContestDraft, now: datetime) -> list[str]:
    errors: list[str] = []
    title = (draft.title or "").strip()
    description = (draft.description or "").strip()
    if len(title) < 3:
        errors.append("Title must be at least 3 characters")
    elif len(title) > 100:
        errors.append("Title too long")
    if len(description) < 10:
        errors.append("Description must be at least 10 characters")
    elif len(description) > 500:
        errors.append("Description too long")
    if draft.contest_type not in CONTEST_TYPES:
        errors.append(f"contest_type must be one of: {', '.join(CONTEST_TYPES)}")
    if draft.difficulty not in DIFFICULTY_LEVELS:
        errors.append(f"difficulty must be one of: {', '.join(DIFFICULTY_LEVELS)}")
    if draft.entry_fee < 0:
        errors.append("Entry fee cannot be negative")
    elif draft.entry_fee > 10000:
        errors.append("Entry fee too high")
    if draft.max_participants < 2:
        errors.append("Minimum 2 participants")
    elif draft.max_participants > 10000:
        errors.append("Too many participants")

    if draft.start_time is not None and draft.start_time <= now:
        errors.append("Start time must be in the future")
    if draft.start_time and draft.end_time and draft.end_time <= draft.start_time:
        errors.append("Contest end time must be after start time")
    if draft.start_time and draft.team_building_end_time and draft.start_time <= draft.team_building_end_time:
        errors.append("Start time must be after team building end time")

    _check_range(errors, draft.first_place_pct, 30, 70, "First place")
    _check_range(errors, draft.second_place_pct, 10, 40, "Second place")
    _check_range(errors, draft.third_place_pct, 5, 30, "Third place")
    _check_range(errors, draft.platform_fee_pct, 15, 25, "Platform fee")
    total_pct = draft.first_place_pct + draft.second_place_pct + draft.third_place_pct + draft.platform_fee_pct
    if total_pct > 100:
        errors.append("Prize distribution cannot exceed 100%")
    return errors


def get_or_create_tags(db: Session, names: Iterable[str]) -> list[ContestTag]:
    tags: list[ContestTag] = []
    for raw in dict.fromkeys(name.strip() for name in names if name and name.strip()):
        tag = db.execute(select(ContestTag).where(ContestTag.name == raw)).scalar_one_or_none()
        if tag is None:
            tag = ContestTag(name=raw, created_at=datetime.utcnow())
            db.add(tag)
            db.flush()
        tags.append(tag)
    return tags


def create_contest(db: Session, draft: ContestDraft, created_by: int | None, now: datetime | None = None) -> Contest:
    current = naive_utc(now) or datetime.utcnow()
    apply_draft_defaults(draft, current)
    errors = validate_contest_draft(draft, current)
    if errors:
        raise HTTPException(400, detail={"message": "Contest validation failed.", "errors": errors})

    contest = Contest(
        title=draft.title.strip(),
        description=draft.description.strip(),
        contest_type=draft.contest_type,
        difficulty=draft.difficulty,
        entry_fee=float(draft.entry_fee),
        prize_pool=float(draft.entry_fee * draft.max_participants),
        max_participants=draft.max_participants,
        current_participants=0,
        status="upcoming",
        featured=draft.featured,
        team_building_end_time=draft.team_building_end_time,
        start_time=draft.start_time,
        end_time=draft.end_time,
        first_place_pct=float(draft.first_place_pct),
        second_place_pct=float(draft.second_place_pct),
        third_place_pct=float(draft.third_place_pct),
        platform_fee_pct=float(draft.platform_fee_pct),
        created_by=created_by,
        created_at=current,
        updated_at=current,
    )
    contest.tags = get_or_create_tags(db, draft.tags)
    contest.rules = [
        ContestRule(rule_text=text.strip(), rule_order=index + 1)
        for index, text in enumerate(rule for rule in draft.rules if rule and rule.strip())
    ]
    db.add(contest)
    db.flush()
    queue_event(db, CONTESTS_CHANNEL, {"type": "INSERT", "table": "contests", "record": contest_record(contest)})
    logger.info("Contest {} created by {}", contest.id, created_by)
    return contest


# Discovery


@dataclass
class ContestSearchFilters:
    search: str | None = None
    contest_types: list[str] = field(default_factory=list)
    min_entry_fee: Decimal = Decimal("0")
    max_entry_fee: Decimal = Decimal("10000")
    min_prize_pool: Decimal | None = None
    statuses: list[str] = field(default_factory=lambda: ["upcoming", "live"])
    difficulty_levels: list[str] = field(default_factory=list)
    featured: bool | None = None
    tags: list[str] = field(default_factory=list)
    sort_by: str = "created_at"
    sort_direction: str = "desc"
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass
class ContestPage:
    contests: list[Contest]
    total_count: int
    current_page: int
    page_size: int
    total_pages: int
    favorite_ids: set[int]
    joined_ids: set[int]


def user_contest_flags(db: Session, user_id: int | None, contest_ids: list[int]) -> tuple[set[int], set[int]]:
    if user_id is None or not contest_ids:
        return set(), set()
    favorites = set(
        db.execute(
            select(ContestFavorite.contest_id).where(
                ContestFavorite.user_id == user_id,
                ContestFavorite.contest_id.in_(contest_ids),
            )
        ).scalars()
    )
    joined = set(
        db.execute(
            select(ContestParticipant.contest_id).where(
                ContestParticipant.user_id == user_id,
                ContestParticipant.contest_id.in_(contest_ids),
            )
        ).scalars()
    )
    return favorites, joined


def search_contests(db: Session, filters: ContestSearchFilters, user_id: int | None = None) -> ContestPage:
    if filters.sort_by not in SORTABLE_FIELDS:
        raise HTTPException(400, f"sort_by must be one of: {', '.join(SORTABLE_FIELDS)}")
    if filters.sort_direction not in {"asc", "desc"}:
        raise HTTPException(400, "sort_direction must be asc or desc")

    page = max(1, filters.page)
    page_size = min(MAX_PAGE_SIZE, max(1, filters.page_size))

    conditions = [
        Contest.entry_fee >= float(filters.min_entry_fee),
        Contest.entry_fee <= float(filters.max_entry_fee),
    ]
    search = (filters.search or "").strip()
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Contest.title.ilike(pattern), Contest.description.ilike(pattern)))
    if filters.contest_types:
        conditions.append(Contest.contest_type.in_(filters.contest_types))
    if filters.min_prize_pool is not None:
        conditions.append(Contest.prize_pool >= float(filters.min_prize_pool))
    if filters.statuses:
        conditions.append(Contest.status.in_(filters.statuses))
    if filters.difficulty_levels:
        conditions.append(Contest.difficulty.in_(filters.difficulty_levels))
    if filters.featured is not None:
        conditions.append(Contest.featured.is_(filters.featured))
    if filters.tags:
        conditions.append(Contest.tags.any(ContestTag.name.in_(filters.tags)))

    total = int(db.execute(select(func.count()).select_from(Contest).where(*conditions)).scalar_one())
    column = SORTABLE_FIELDS[filters.sort_by]
    ordering = column.asc() if filters.sort_direction == "asc" else column.desc()
    contests = db.execute(
        select(Contest)
        .where(*conditions)
        .order_by(ordering, Contest.id.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    ).scalars().all()

    favorite_ids, joined_ids = user_contest_flags(db, user_id, [contest.id for contest in contests])
    return ContestPage(
        contests=list(contests),
        total_count=total,
        current_page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
        favorite_ids=favorite_ids,
        joined_ids=joined_ids,
    )


def list_tags(db: Session) -> list[ContestTag]:
    return list(db.execute(select(ContestTag).order_by(ContestTag.name.asc())).scalars())


def toggle_favorite(db: Session, user_id: int, contest_id: int) -> bool:
    get_contest_or_404(db, contest_id)
    favorite = db.execute(
        select(ContestFavorite).where(ContestFavorite.user_id == user_id, ContestFavorite.contest_id == contest_id)
    ).scalar_one_or_none()
    if favorite is not None:
        db.delete(favorite)
        db.flush()
        return False
    db.add(ContestFavorite(user_id=user_id, contest_id=contest_id, created_at=datetime.utcnow()))
    db.flush()
    return True


def favorite_contests(db: Session, user_id: int) -> list[Contest]:
    return list(
        db.execute(
            select(Contest)
            .join(ContestFavorite, ContestFavorite.contest_id == Contest.id)
            .where(ContestFavorite.user_id == user_id)
            .order_by(ContestFavorite.created_at.desc(), ContestFavorite.id.desc())
        ).scalars()
    )


def joined_contests(db: Session, user_id: int) -> list[tuple[Contest, ContestParticipant]]:
    rows = db.execute(
        select(Contest, ContestParticipant)
        .join(ContestParticipant, ContestParticipant.contest_id == Contest.id)
        .where(ContestParticipant.user_id == user_id)
        .order_by(ContestParticipant.joined_at.desc())
    ).all()
    return [(contest, participant) for contest, participant in rows]


# Details


@dataclass
class PrizeSlot:
    rank: int
    prize_percentage: Decimal
    prize_amount: Decimal


@dataclass
class ContestDetails:
    contest: Contest
    platform_fee: Decimal
    prize_pool_contribution: Decimal
    rules: list[ContestRule]
    prize_distribution: list[PrizeSlot]
    user_teams: list[Team]
    selected_team_id: int | None
    is_joined: bool
    is_favorited: bool


def prize_distribution(contest: Contest) -> list[PrizeSlot]:
    pool = dec(contest.prize_pool)
    return [
        PrizeSlot(rank=rank, prize_percentage=pct, prize_amount=(pool * pct / 100).quantize(Decimal("0.01")))
        for rank, pct in prize_percentages(contest)
    ]


def contest_details(db: Session, contest: Contest, user_id: int | None = None) -> ContestDetails:
    fee = dec(contest.entry_fee)
    platform_fee = (fee * dec(contest.platform_fee_pct) / 100).quantize(Decimal("0.01"))

    user_teams: list[Team] = []
    selected_team_id: int | None = None
    is_joined = False
    is_favorited = False
    if user_id is not None:
        user_teams = list(
            db.execute(select(Team).where(Team.user_id == user_id).order_by(Team.created_at.desc())).scalars()
        )
        participant = db.execute(
            select(ContestParticipant).where(
                ContestParticipant.contest_id == contest.id,
                ContestParticipant.user_id == user_id,
            )
        ).scalar_one_or_none()
        if participant is not None:
            is_joined = True
            selected_team_id = int(participant.team_id)
        favorites, _ = user_contest_flags(db, user_id, [contest.id])
        is_favorited = contest.id in favorites

    return ContestDetails(
        contest=contest,
        platform_fee=platform_fee,
        prize_pool_contribution=fee - platform_fee,
        rules=list(contest.rules),
        prize_distribution=prize_distribution(contest),
        user_teams=user_teams,
        selected_team_id=selected_team_id,
        is_joined=is_joined,
        is_favorited=is_favorited,
    )


# Entry


def join_contest(
    db: Session,
    contest_id: int,
    user_id: int,
    team_id: int,
    now: datetime | None = None,
) -> ContestParticipant:
    current = naive_utc(now) or datetime.utcnow()
    contest = get_contest_or_404(db, contest_id, for_update=True)
    if contest.status != "upcoming":
        raise HTTPException(400, "Contest has already started or ended")
    if current >= contest.team_building_end_time:
        raise HTTPException(400, "Team building period has ended for this contest")
    if int(contest.current_participants or 0) >= int(contest.max_participants):
        raise HTTPException(400, "Contest is full")

    existing = db.execute(
        select(ContestParticipant.id).where(
            ContestParticipant.contest_id == contest.id,
            ContestParticipant.user_id == user_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise HTTPException(400, "You have already joined this contest")
    team = get_owned_team_or_raise(db, user_id, team_id)
    ensure_team_complete(team)

    charge_entry_fee(db, user_id, contest)
    participant = ContestParticipant(contest_id=contest.id, user_id=user_id, team_id=team.id, joined_at=current)
    db.add(participant)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, "You have already joined this contest")

    contest.current_participants = int(contest.current_participants or 0) + 1
    create_notification(
        db,
        user_id=user_id,
        title="Contest joined",
        message=f"You joined {contest.title} with team {team.name}.",
        type="contest",
        link=f"/contests/{contest.id}",
    )
    queue_event(db, CONTESTS_CHANNEL, {"type": "UPDATE", "table": "contests", "record": contest_record(contest)})
    return participant


def switch_team(db: Session, contest_id: int, user_id: int, team_id: int) -> ContestParticipant:
    contest = get_contest_or_404(db, contest_id)
    if contest.status != "upcoming":
        raise HTTPException(400, "Cannot change team after contest has started")
    team = get_owned_team_or_raise(db, user_id, team_id)
    ensure_team_complete(team)
    participant = db.execute(
        select(ContestParticipant)
        .where(ContestParticipant.contest_id == contest.id, ContestParticipant.user_id == user_id)
        .with_for_update()
    ).scalar_one_or_none()
    if participant is None:
        raise HTTPException(400, "You have not joined this contest")
    participant.team_id = team.id
    return participant


def team_is_locked(db: Session, team_id: int) -> bool:
    """A team is locked once any contest it is entered in has left `upcoming`."""
    locked = db.execute(
        select(func.count())
        .select_from(ContestParticipant)
        .join(Contest, Contest.id == ContestParticipant.contest_id)
        .where(ContestParticipant.team_id == team_id, Contest.status != "upcoming")
    ).scalar_one()
    return bool(locked)


# Scoring


def recalculate_scores(db: Session, contest: Contest, market: MarketDataService) -> list[RankedEntry]:
    performances = [quote.to_performance() for quote in market.all_quotes()]
    participants = db.execute(
        select(ContestParticipant).where(ContestParticipant.contest_id == contest.id)
    ).scalars().all()
    scores = {
        int(score.participant_id): score
        for score in db.execute(select(ContestScore).where(ContestScore.contest_id == contest.id)).scalars()
    }

    entries: list[RankedEntry] = []
    for participant in participants:
        team = db.get(Team, participant.team_id)
        points = total_team_points(team_picks(team), performances) if team else Decimal("0")
        entries.append(RankedEntry(key=int(participant.id), points=points, joined_at=participant.joined_at))

    now = datetime.utcnow()
    ranked = rank_entries(entries)
    for entry in ranked:
        score = scores.get(entry.key)
        if score is None:
            score = ContestScore(
                contest_id=contest.id,
                participant_id=entry.key,
                current_points=0.0,
                points_change=0.0,
                prize_amount=0.0,
            )
            db.add(score)
        previous_points = dec(score.current_points)
        score.previous_rank = score.current_rank
        score.current_rank = entry.rank
        score.points_change = float(round_points(entry.points - previous_points))
        score.current_points = float(entry.points)
        score.last_calculated = now
    db.flush()

    queue_event(
        db,
        CONTESTS_CHANNEL,
        {
            "type": "UPDATE",
            "table": "contest_scores",
            "record": {
                "contest_id": int(contest.id),
                "scores": [
                    {"participant_id": entry.key, "rank": entry.rank, "points": float(entry.points)}
                    for entry in ranked
                ],
            },
        },
    )
    return ranked


@dataclass
class LeaderboardRow:
    participant_id: int
    user_id: int
    username: str
    avatar_url: str | None
    team_name: str
    current_rank: int
    previous_rank: int
    points: Decimal
    points_change: Decimal
    prize_amount: Decimal


def contest_leaderboard(db: Session, contest_id: int, limit: int = LEADERBOARD_LIMIT) -> list[LeaderboardRow]:
    rows = db.execute(
        select(ContestParticipant, User, Team, ContestScore)
        .join(User, User.id == ContestParticipant.user_id)
        .join(Team, Team.id == ContestParticipant.team_id)
        .outerjoin(ContestScore, ContestScore.participant_id == ContestParticipant.id)
        .where(ContestParticipant.contest_id == contest_id)
    ).all()

    entries: list[tuple[int | None, Decimal, datetime, LeaderboardRow]] = []
    for participant, user, team, score in rows:
        points = dec(score.current_points) if score else Decimal("0")
        rank = int(score.current_rank) if score and score.current_rank is not None else None
        entries.append(
            (
                rank,
                points,
                participant.joined_at,
                LeaderboardRow(
                    participant_id=int(participant.id),
                    user_id=int(user.id),
                    username=str(user.username),
                    avatar_url=user.avatar_url,
                    team_name=str(team.name),
                    current_rank=rank or 0,
                    previous_rank=int(score.previous_rank) if score and score.previous_rank is not None else 0,
                    points=points,
                    points_change=dec(score.points_change) if score else Decimal("0"),
                    prize_amount=dec(score.prize_amount) if score else Decimal("0"),
                ),
            )
        )

    # Scored rows keep their stored rank; unscored ones follow by points, then join time.
    entries.sort(key=lambda item: (item[0] is None, item[0] or 0, -item[1], item[2]))
    board: list[LeaderboardRow] = []
    for position, (_, _, _, row) in enumerate(entries[:limit], start=1):
        if not row.current_rank:
            row.current_rank = position
        if not row.previous_rank:
            row.previous_rank = row.current_rank
        board.append(row)
    return board


@dataclass
class GlobalLeaderboardRow:
    rank: int
    user_id: int
    username: str
    avatar_url: str | None
    total_points: Decimal
    total_earnings: Decimal
    contests_won: int
    total_contests: int
    win_rate: Decimal


def global_leaderboard(
    db: Session,
    timeframe: str = "weekly",
    now: datetime | None = None,
    limit: int = LEADERBOARD_LIMIT,
) -> list[GlobalLeaderboardRow]:
    if timeframe != "all" and timeframe not in TIMEFRAME_DAYS:
        raise HTTPException(400, "timeframe must be daily, weekly, monthly or all")
    current = naive_utc(now) or datetime.utcnow()

    stmt = (
        select(ContestParticipant, Contest, ContestScore)
        .join(Contest, Contest.id == ContestParticipant.contest_id)
        .outerjoin(ContestScore, ContestScore.participant_id == ContestParticipant.id)
        .where(Contest.status != "cancelled")
    )
    if timeframe in TIMEFRAME_DAYS:
        stmt = stmt.where(ContestParticipant.joined_at >= current - timedelta(days=TIMEFRAME_DAYS[timeframe]))

    totals: dict[int, dict[str, Any]] = {}
    for participant, contest, score in db.execute(stmt).all():
        bucket = totals.setdefault(
            int(participant.user_id),
            {"points": Decimal("0"), "earnings": Decimal("0"), "won": 0, "contests": 0},
        )
        bucket["contests"] += 1
        if score is not None:
            bucket["points"] += dec(score.current_points)
            bucket["earnings"] += dec(score.prize_amount)
            if contest.status == "completed" and score.current_rank == 1:
                bucket["won"] += 1

    if not totals:
        return []
    users = {
        int(user.id): user
        for user in db.execute(select(User).where(User.id.in_(list(totals)))).scalars()
    }

    ordered = sorted(
        totals.items(),
        key=lambda item: (-item[1]["points"], -item[1]["earnings"], str(users[item[0]].username)),
    )
    rows: list[GlobalLeaderboardRow] = []
    for index, (user_id, bucket) in enumerate(ordered[:limit], start=1):
        user = users[user_id]
        win_rate = Decimal(bucket["won"] * 100) / bucket["contests"] if bucket["contests"] else Decimal("0")
        rows.append(
            GlobalLeaderboardRow(
                rank=index,
                user_id=user_id,
                username=str(user.username),
                avatar_url=user.avatar_url,
                total_points=round_points(bucket["points"]),
                total_earnings=bucket["earnings"],
                contests_won=bucket["won"],
                total_contests=bucket["contests"],
                win_rate=round_points(win_rate),
            )
        )
    return rows
