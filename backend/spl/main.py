import asyncio
import os
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import (
    consume_password_reset,
    find_active_session,
    hash_password,
    issue_password_reset,
    open_session,
    revoke_user_sessions,
    verify_password,
)
from .contests import (
    ContestDraft,
    ContestSearchFilters,
    ContestStatusError,
    bulk_change_status,
    change_status,
    contest_details,
    contest_leaderboard,
    create_contest,
    favorite_contests,
    get_contest_or_404,
    global_leaderboard,
    join_contest,
    joined_contests,
    list_tags,
    naive_utc,
    recalculate_scores,
    run_auto_status_updates,
    search_contests,
    switch_team,
    team_is_locked,
    team_picks,
    toggle_favorite,
)
from .db import SessionLocal, get_db
from .feed import CONTESTS_CHANNEL, feed, notifications_channel
from .market import QUOTE_CACHE_SECONDS, MarketDataService, PricePoint, Quote, get_market
from .models import (
    Contest,
    ContestParticipant,
    ContestScore,
    ContestTag,
    PaymentMethod,
    Notification,
    Team,
    TeamStock,
    Transaction,
    User,
    UserSession,
    Wallet,
    WithdrawalRequest,
)
from .notifications import (
    list_notifications,
    mark_all_as_read,
    mark_as_read,
    notify_users,
    unread_count,
)
from .schemas import (
    AdminNotificationIn,
    AdminNotificationOut,
    AuthLoginIn,
    AuthPasswordUpdateIn,
    AuthRegisterIn,
    AuthSessionOut,
    AutoStatusIn,
    BudgetOut,
    BulkStatusChangeIn,
    ContestCreateIn,
    ContestDetailsOut,
    ContestJoinIn,
    ContestJoinOut,
    ContestOut,
    ContestPageOut,
    ContestRuleOut,
    ContestStatusChangeIn,
    ContestStatusChangeOut,
    ContestTagOut,
    DepositIn,
    DepositOut,
    EntryFeeBreakdownOut,
    FavoriteToggleOut,
    GlobalLeaderboardEntryOut,
    JoinedContestOut,
    LeaderboardEntryOut,
    MarkReadOut,
    NotificationOut,
    OkOut,
    PasswordResetConfirmIn,
    PasswordResetRequestIn,
    PasswordResetRequestOut,
    PaymentMethodIn,
    PaymentMethodOut,
    PrizeSlotOut,
    RoleConfigOut,
    ScoreRefreshOut,
    StatusChangeResultOut,
    StockPricePointOut,
    StockQuoteOut,
    StockSearchResultOut,
    TeamAutoFillOut,
    TeamCreateIn,
    TeamCreateOut,
    TeamDraftIn,
    TeamOut,
    TeamRoleUpdateIn,
    TeamStockIn,
    TeamStockOut,
    TeamValidationOut,
    TransactionListOut,
    TransactionOut,
    TransactionSummaryOut,
    UnreadCountOut,
    UserOut,
    UserProfileOut,
    UserProfileUpdateIn,
    UserTeamOut,
    ValidationRuleOut,
    WalletOut,
    WithdrawalIn,
    WithdrawalProcessIn,
    WithdrawalRequestOut,
)
from .seed import DEFAULT_SANDBOX_USERNAME, init_db, seed
from .team import (
    ROLE_CONFIGS,
    BudgetSummary,
    StockPick,
    TeamCompositionError,
    ValidationRule,
    add_stock,
    auto_fill,
    budget_summary,
    is_team_valid,
    next_available_role,
    reassign_role,
    remove_stock,
    total_spent,
    validate_team,
    with_role,
)
from .wallet import (
    WELCOME_BONUS,
    add_payment_method,
    available_balance,
    deposit,
    get_or_create_wallet,
    grant_bonus,
    list_payment_methods,
    list_transactions,
    list_withdrawal_requests,
    process_withdrawal,
    request_withdrawal,
    transaction_summary,
)

app = FastAPI(title="Stock Premier League API")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"ok": True, "service": "Stock Premier League API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


VALID_USERNAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
VALID_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RAW_ADMIN_USERNAMES = (os.environ.get("ADMIN_USERNAMES") or "").strip()
if not RAW_ADMIN_USERNAMES:
    RAW_ADMIN_USERNAMES = DEFAULT_SANDBOX_USERNAME
ADMIN_USERNAMES = {
    name.strip().lower()
    for name in RAW_ADMIN_USERNAMES.split(",")
    if name.strip()
}
RETURN_RESET_TOKENS = os.environ.get("RETURN_RESET_TOKENS", "false").strip().lower() in {"1", "true", "yes"}


@dataclass
class AuthContext:
    user: User
    session: UserSession


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


def normalize_username(raw_username: str | None) -> str:
    username = (raw_username or "").strip().lower()
    if not username:
        raise HTTPException(400, "username is required")
    if not VALID_USERNAME.match(username):
        raise HTTPException(
            status_code=400,
            detail=(
                "Invalid username. Use lowercase letters, numbers, underscore, or hyphen "
                "(max 64 chars)."
            ),
        )
    return username


def normalize_email(raw_email: str | None) -> str | None:
    email = (raw_email or "").strip().lower()
    if not email:
        return None
    if not VALID_EMAIL.match(email):
        raise HTTPException(400, "Invalid email address.")
    return email


def auth_exception(detail: str = "Authentication required.") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization:
        raise auth_exception()
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        raise auth_exception("Invalid authorization header.")
    return token.strip()


def get_user_by_id_or_raise(
    db: Session,
    user_id: int,
    for_update: bool = False,
) -> User:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    user = db.execute(stmt).scalar_one_or_none()
    if not user:
        raise auth_exception("User not found.")
    return user


def get_auth_context(
    bearer_token: str = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> AuthContext:
    session = find_active_session(db, bearer_token)
    if not session:
        raise auth_exception("Session is invalid or expired.")
    user = get_user_by_id_or_raise(
        db=db,
        user_id=int(session.user_id),
        for_update=False,
    )
    return AuthContext(user=user, session=session)


def get_optional_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db),
) -> User | None:
    """Anonymous browsing is allowed; a valid bearer token only adds per-user flags."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        return None
    session = find_active_session(db, token.strip())
    if not session:
        return None
    return db.get(User, session.user_id)


def is_admin_user(user: User) -> bool:
    return str(user.role) == "admin" or str(user.username).strip().lower() in ADMIN_USERNAMES


def get_admin_context(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not is_admin_user(auth.user):
        raise HTTPException(status_code=403, detail="Admin access required.")
    return auth


def normalize_optional_profile_field(value: str | None) -> str | None:
    normalized = (value or "").strip()
    return normalized or None


def user_to_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        username=str(user.username),
        email=user.email,
        full_name=normalize_optional_profile_field(user.full_name),
        avatar_url=normalize_optional_profile_field(user.avatar_url),
        bio=normalize_optional_profile_field(user.bio),
        role=str(user.role or "user"),
        is_admin=is_admin_user(user),
    )


def create_auth_session_out(db: Session, user: User) -> AuthSessionOut:
    token, session = open_session(db, user)
    return AuthSessionOut(
        access_token=token,
        expires_at=session.expires_at,
        user=user_to_out(user),
    )


def composition_exception(exc: TeamCompositionError) -> HTTPException:
    return HTTPException(400, str(exc))


def quote_to_out(quote: Quote) -> StockQuoteOut:
    return StockQuoteOut(
        symbol=quote.symbol,
        name=quote.name,
        price=quote.price,
        change=quote.change,
        change_percent=quote.change_percent,
        volume=quote.volume,
        market_cap=quote.market_cap,
        pe_ratio=quote.pe_ratio,
        sector=quote.sector,
        logo=quote.logo,
    )


def pick_to_out(pick: StockPick) -> TeamStockOut:
    return TeamStockOut(
        symbol=pick.symbol,
        name=pick.name,
        sector=pick.sector,
        price=float(pick.price),
        change=float(pick.change),
        change_percent=float(pick.change_percent),
        role=pick.role,
        multiplier=float(pick.multiplier),
    )


def budget_to_out(summary: BudgetSummary) -> BudgetOut:
    return BudgetOut(
        budget=float(summary.budget),
        total_spent=float(summary.total_spent),
        remaining=float(summary.remaining),
        used_percent=float(summary.used_percent),
        is_over_budget=summary.is_over_budget,
        is_near_budget=summary.is_near_budget,
        stocks_selected=summary.stocks_selected,
        average_price=float(summary.average_price),
    )


def rules_to_out(rules: list[ValidationRule]) -> list[ValidationRuleOut]:
    return [
        ValidationRuleOut(id=rule.id, name=rule.name, is_valid=rule.is_valid, message=rule.message, type=rule.type)
        for rule in rules
    ]


def team_to_out(db: Session, team: Team) -> TeamOut:
    return TeamOut(
        id=int(team.id),
        name=str(team.name),
        total_value=float(team.total_value),
        stocks=[pick_to_out(pick) for pick in team_picks(team)],
        is_locked=team_is_locked(db, team.id),
        created_at=team.created_at,
        updated_at=team.updated_at,
    )


def tag_to_out(tag: ContestTag) -> ContestTagOut:
    return ContestTagOut(id=int(tag.id), name=str(tag.name), description=tag.description, color=tag.color)


def contest_to_out(
    contest: Contest,
    favorite_ids: set[int] | None = None,
    joined_ids: set[int] | None = None,
) -> ContestOut:
    return ContestOut(
        id=int(contest.id),
        title=str(contest.title),
        description=str(contest.description),
        contest_type=str(contest.contest_type),
        difficulty=str(contest.difficulty),
        entry_fee=float(contest.entry_fee),
        prize_pool=float(contest.prize_pool),
        max_participants=int(contest.max_participants),
        current_participants=int(contest.current_participants or 0),
        status=str(contest.status),
        featured=bool(contest.featured),
        team_building_end_time=contest.team_building_end_time,
        start_time=contest.start_time,
        end_time=contest.end_time,
        first_place_pct=float(contest.first_place_pct),
        second_place_pct=float(contest.second_place_pct),
        third_place_pct=float(contest.third_place_pct),
        platform_fee_pct=float(contest.platform_fee_pct),
        created_by=contest.created_by,
        created_at=contest.created_at,
        updated_at=contest.updated_at,
        tags=[tag_to_out(tag) for tag in sorted(contest.tags, key=lambda tag: str(tag.name))],
        is_favorited=contest.id in (favorite_ids or set()),
        is_joined=contest.id in (joined_ids or set()),
    )


def wallet_to_out(wallet: Wallet) -> WalletOut:
    return WalletOut(
        id=int(wallet.id),
        user_id=int(wallet.user_id),
        balance=float(wallet.balance),
        locked_balance=float(wallet.locked_balance),
        available_balance=float(available_balance(wallet)),
        total_deposited=float(wallet.total_deposited),
        total_withdrawn=float(wallet.total_withdrawn),
        total_winnings=float(wallet.total_winnings),
        created_at=wallet.created_at,
        updated_at=wallet.updated_at,
    )


def transaction_to_out(tx: Transaction) -> TransactionOut:
    return TransactionOut(
        id=int(tx.id),
        amount=float(tx.amount),
        type=str(tx.type),
        status=str(tx.status),
        description=tx.description,
        reference_id=tx.reference_id,
        payment_method_id=tx.payment_method_id,
        contest_id=tx.contest_id,
        created_at=tx.created_at,
    )


def withdrawal_to_out(request: WithdrawalRequest) -> WithdrawalRequestOut:
    return WithdrawalRequestOut(
        id=int(request.id),
        user_id=int(request.user_id),
        amount=float(request.amount),
        status=str(request.status),
        payment_method_id=request.payment_method_id,
        bank_details=request.bank_details,
        created_at=request.created_at,
        processed_at=request.processed_at,
    )


def payment_method_to_out(method: PaymentMethod) -> PaymentMethodOut:
    return PaymentMethodOut(
        id=int(method.id),
        type=str(method.type),
        name=str(method.name),
        details=dict(method.details or {}),
        is_default=bool(method.is_default),
        last_used_at=method.last_used_at,
        created_at=method.created_at,
    )


def notification_to_out(notification: Notification) -> NotificationOut:
    return NotificationOut(
        id=int(notification.id),
        title=str(notification.title),
        message=str(notification.message),
        type=str(notification.type),
        is_read=bool(notification.is_read),
        link=notification.link,
        created_at=notification.created_at,
    )


def leaderboard_to_out(db: Session, contest_id: int) -> list[LeaderboardEntryOut]:
    return [
        LeaderboardEntryOut(
            participant_id=row.participant_id,
            user_id=row.user_id,
            username=row.username,
            avatar_url=row.avatar_url,
            team_name=row.team_name,
            current_rank=row.current_rank,
            previous_rank=row.previous_rank,
            points=float(row.points),
            points_change=float(row.points_change),
            prize_amount=float(row.prize_amount),
        )
        for row in contest_leaderboard(db, contest_id)
    ]


# Auth


@app.post("/auth/register", response_model=AuthSessionOut)
def register(payload: AuthRegisterIn, db: Session = Depends(get_db)):
    username = normalize_username(payload.username)
    email = normalize_email(payload.email)
    existing = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if existing:
        raise HTTPException(400, f"User '{username}' already exists.")
    if email and db.execute(select(User.id).where(User.email == email)).scalar_one_or_none():
        raise HTTPException(400, "Email is already registered.")

    user = User(
        username=username,
        email=email,
        full_name=normalize_optional_profile_field(payload.full_name),
        role="user",
        password_hash=hash_password(payload.password),
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, f"User '{username}' already exists.")

    get_or_create_wallet(db, user.id)
    grant_bonus(db, user.id, WELCOME_BONUS)
    out = create_auth_session_out(db=db, user=user)
    db.commit()
    logger.info("Registered user {}", username)
    return out


@app.post("/auth/login", response_model=AuthSessionOut)
def login(payload: AuthLoginIn, db: Session = Depends(get_db)):
    identifier = payload.username.strip().lower()
    column = User.email if "@" in identifier else User.username
    user = db.execute(select(User).where(column == identifier)).scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        raise auth_exception("Invalid username or password.")

    out = create_auth_session_out(db=db, user=user)
    db.commit()
    return out


@app.post("/auth/logout", response_model=OkOut)
def logout(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    auth.session.revoked_at = datetime.utcnow()
    db.commit()
    return OkOut(ok=True)


@app.get("/auth/me", response_model=UserOut)
def auth_me(auth: AuthContext = Depends(get_auth_context)):
    return user_to_out(auth.user)


@app.post("/auth/password", response_model=OkOut)
def auth_update_password(
    payload: AuthPasswordUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(
        db=db,
        user_id=auth.user.id,
        for_update=True,
    )
    if not verify_password(payload.current_password, user.password_hash):
        raise HTTPException(400, "Current password is incorrect.")
    if payload.current_password == payload.new_password:
        raise HTTPException(400, "New password must be different from current password.")

    user.password_hash = hash_password(payload.new_password)
    db.commit()
    return OkOut(ok=True)


@app.post("/auth/password-reset/request", response_model=PasswordResetRequestOut)
def auth_password_reset_request(payload: PasswordResetRequestIn, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    token = None
    if user is not None:
        token = issue_password_reset(db, user)
        db.commit()
        logger.info("Password reset issued for user {}", user.id)
    # Same response whether or not the address is registered.
    return PasswordResetRequestOut(ok=True, reset_token=token if RETURN_RESET_TOKENS else None)


@app.post("/auth/password-reset/confirm", response_model=OkOut)
def auth_password_reset_confirm(payload: PasswordResetConfirmIn, db: Session = Depends(get_db)):
    user = consume_password_reset(db, payload.token.strip())
    if user is None:
        raise HTTPException(400, "Reset token is invalid or expired.")
    user.password_hash = hash_password(payload.new_password)
    revoke_user_sessions(db, user.id)
    db.commit()
    return OkOut(ok=True)


# Profile


def user_profile_to_out(db: Session, user: User) -> UserProfileOut:
    wallet = get_or_create_wallet(db, user.id)
    teams_count = int(db.execute(select(func.count()).select_from(Team).where(Team.user_id == user.id)).scalar_one())
    contests_joined = int(
        db.execute(
            select(func.count()).select_from(ContestParticipant).where(ContestParticipant.user_id == user.id)
        ).scalar_one()
    )
    contests_won = int(
        db.execute(
            select(func.count())
            .select_from(ContestScore)
            .join(ContestParticipant, ContestParticipant.id == ContestScore.participant_id)
            .join(Contest, Contest.id == ContestScore.contest_id)
            .where(
                ContestParticipant.user_id == user.id,
                ContestScore.current_rank == 1,
                Contest.status == "completed",
            )
        ).scalar_one()
    )
    return UserProfileOut(
        user=user_to_out(user),
        teams_count=teams_count,
        contests_joined=contests_joined,
        contests_won=contests_won,
        total_winnings=float(wallet.total_winnings),
        balance=float(wallet.balance),
    )


@app.get("/users/me/profile", response_model=UserProfileOut)
def users_me_profile(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    out = user_profile_to_out(db, auth.user)
    db.commit()
    return out


@app.patch("/users/me/profile", response_model=UserProfileOut)
def users_me_profile_update(
    payload: UserProfileUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    user = get_user_by_id_or_raise(
        db=db,
        user_id=auth.user.id,
        for_update=True,
    )
    user.full_name = normalize_optional_profile_field(payload.full_name)
    user.avatar_url = normalize_optional_profile_field(payload.avatar_url)
    user.bio = normalize_optional_profile_field(payload.bio)
    db.flush()

    out = user_profile_to_out(db, user)
    db.commit()
    return out


# Stocks


@app.get("/stocks/search", response_model=list[StockSearchResultOut])
def stocks_search(
    q: str = Query(default="", max_length=64),
    market: MarketDataService = Depends(get_market),
):
    return [StockSearchResultOut(**vars(match)) for match in market.search_stocks(q)]


@app.get("/stocks/trending", response_model=list[StockQuoteOut])
def stocks_trending(market: MarketDataService = Depends(get_market)):
    return [quote_to_out(quote) for quote in market.get_trending()]


@app.get("/stocks/categories", response_model=list[str])
def stocks_categories(market: MarketDataService = Depends(get_market)):
    return market.categories()


@app.get("/stocks/categories/{sector}", response_model=list[StockQuoteOut])
def stocks_by_category(sector: str, market: MarketDataService = Depends(get_market)):
    return [quote_to_out(quote) for quote in market.get_by_category(sector)]


@app.get("/stocks/roles", response_model=list[RoleConfigOut])
def stocks_roles():
    return [
        RoleConfigOut(
            key=config.key,
            name=config.name,
            multiplier=float(config.multiplier),
            max_count=config.max_count,
            description=config.description,
        )
        for config in ROLE_CONFIGS.values()
    ]


@app.get("/stocks/{symbol}", response_model=StockQuoteOut)
def stocks_quote(symbol: str, market: MarketDataService = Depends(get_market)):
    quote = market.get_quote(symbol)
    if quote is None:
        raise HTTPException(404, f"Stock '{symbol.upper()}' not found")
    return quote_to_out(quote)


@app.get("/stocks/{symbol}/history", response_model=list[StockPricePointOut])
def stocks_history(
    symbol: str,
    interval: str = Query(default="daily"),
    market: MarketDataService = Depends(get_market),
):
    try:
        points: list[PricePoint] = market.get_time_series(symbol, interval)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return [StockPricePointOut(**vars(point)) for point in points]


# Teams


def quote_or_raise(market: MarketDataService, symbol: str) -> Quote:
    quote = market.get_quote(symbol)
    if quote is None:
        raise HTTPException(400, f"Unknown stock symbol '{symbol.strip().upper()}'")
    return quote


def check_role(role: str | None) -> None:
    if role is not None and role not in ROLE_CONFIGS:
        raise HTTPException(400, f"role must be one of: {', '.join(ROLE_CONFIGS)}")


def draft_picks(market: MarketDataService, stocks: list[TeamStockIn]) -> list[StockPick]:
    """Price a draft without rejecting it, so the checklist can report every problem at once."""
    picks: list[StockPick] = []
    for item in stocks:
        check_role(item.role)
        pick = quote_or_raise(market, item.symbol).to_pick()
        role = item.role
        if role is None:
            try:
                role = next_available_role(picks)
            except TeamCompositionError:
                role = None
        picks.append(with_role(pick, role) if role else pick)
    return picks


def strict_picks(market: MarketDataService, stocks: list[TeamStockIn]) -> list[StockPick]:
    picks: list[StockPick] = []
    for item in stocks:
        check_role(item.role)
        try:
            picks = add_stock(picks, quote_or_raise(market, item.symbol).to_pick(), role=item.role)
        except TeamCompositionError as exc:
            raise composition_exception(exc)
    return picks


def get_team_or_404(db: Session, user_id: int, team_id: int) -> Team:
    team = db.execute(select(Team).where(Team.id == team_id, Team.user_id == user_id)).scalar_one_or_none()
    if team is None:
        raise HTTPException(404, "Team not found")
    return team


def ensure_team_editable(db: Session, team: Team) -> None:
    if team_is_locked(db, team.id):
        raise HTTPException(400, "Team is locked because a contest it is entered in has started.")


@app.post("/teams/validate", response_model=TeamValidationOut)
def teams_validate(
    payload: TeamDraftIn,
    auth: AuthContext = Depends(get_auth_context),
    market: MarketDataService = Depends(get_market),
):
    picks = draft_picks(market, payload.stocks)
    rules = validate_team(picks, payload.name)
    return TeamValidationOut(
        is_valid=is_team_valid(rules),
        rules=rules_to_out(rules),
        budget=budget_to_out(budget_summary(picks)),
        stocks=[pick_to_out(pick) for pick in picks],
    )


@app.post("/teams/auto-fill", response_model=TeamAutoFillOut)
def teams_auto_fill(
    payload: TeamDraftIn,
    auth: AuthContext = Depends(get_auth_context),
    market: MarketDataService = Depends(get_market),
):
    current = strict_picks(market, payload.stocks)
    try:
        filled = auto_fill(current, [quote.to_pick() for quote in market.all_quotes()])
    except TeamCompositionError as exc:
        raise composition_exception(exc)
    return TeamAutoFillOut(
        stocks=[pick_to_out(pick) for pick in filled],
        added=[pick.symbol for pick in filled[len(current) :]],
        budget=budget_to_out(budget_summary(filled)),
    )


@app.post("/teams", response_model=TeamCreateOut)
def teams_create(
    payload: TeamCreateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
    market: MarketDataService = Depends(get_market),
):
    picks = strict_picks(market, payload.stocks)
    rules = validate_team(picks, payload.name)
    if not is_team_valid(rules):
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Team is not valid.",
                "rules": [rule.model_dump() for rule in rules_to_out(rules) if not rule.is_valid],
            },
        )

    now = datetime.utcnow()
    team = Team(
        user_id=auth.user.id,
        name=payload.name.strip(),
        total_value=float(total_spent(picks)),
        created_at=now,
        updated_at=now,
    )
    team.stocks = [
        TeamStock(
            symbol=pick.symbol,
            name=pick.name,
            sector=pick.sector,
            price=float(pick.price),
            change=float(pick.change),
            change_percent=float(pick.change_percent),
            role=pick.role,
            multiplier=float(pick.multiplier),
        )
        for pick in picks
    ]
    db.add(team)
    db.flush()

    participant = None
    if payload.contest_id is not None:
        participant = join_contest(db, payload.contest_id, auth.user.id, team.id, now=now)

    out = TeamCreateOut(
        team=team_to_out(db, team),
        contest_id=payload.contest_id,
        participant_id=participant.id if participant else None,
    )
    db.commit()
    return out


@app.get("/teams", response_model=list[TeamOut])
def teams_list(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    teams = db.execute(
        select(Team).where(Team.user_id == auth.user.id).order_by(Team.created_at.desc(), Team.id.desc())
    ).scalars().all()
    return [team_to_out(db, team) for team in teams]


@app.get("/teams/{team_id}", response_model=TeamOut)
def teams_get(
    team_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return team_to_out(db, get_team_or_404(db, auth.user.id, team_id))


@app.patch("/teams/{team_id}/roles", response_model=TeamOut)
def teams_update_role(
    team_id: int,
    payload: TeamRoleUpdateIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    team = get_team_or_404(db, auth.user.id, team_id)
    ensure_team_editable(db, team)
    check_role(payload.role)
    try:
        updated = reassign_role(team_picks(team), payload.symbol, payload.role)
    except TeamCompositionError as exc:
        raise composition_exception(exc)

    by_symbol = {pick.symbol.upper(): pick for pick in updated}
    for stock in team.stocks:
        pick = by_symbol[str(stock.symbol).upper()]
        stock.role = pick.role
        stock.multiplier = float(pick.multiplier)
    team.updated_at = datetime.utcnow()
    db.flush()

    out = team_to_out(db, team)
    db.commit()
    return out


@app.delete("/teams/{team_id}/stocks/{symbol}", response_model=TeamOut)
def teams_remove_stock(
    team_id: int,
    symbol: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    team = get_team_or_404(db, auth.user.id, team_id)
    entered = db.execute(
        select(func.count()).select_from(ContestParticipant).where(ContestParticipant.team_id == team.id)
    ).scalar_one()
    if entered:
        raise HTTPException(400, "Team is entered in a contest. Switch teams before editing its stocks.")
    try:
        remaining = remove_stock(team_picks(team), symbol)
    except TeamCompositionError as exc:
        raise HTTPException(404, str(exc))

    keep = {pick.symbol.upper() for pick in remaining}
    team.stocks = [stock for stock in team.stocks if str(stock.symbol).upper() in keep]
    team.total_value = float(total_spent(remaining))
    team.updated_at = datetime.utcnow()
    db.flush()

    out = team_to_out(db, team)
    db.commit()
    return out


# Contests


@app.get("/contests", response_model=ContestPageOut)
def contests_search(
    search: str | None = Query(default=None, max_length=100),
    contest_types: list[str] | None = Query(default=None),
    min_entry_fee: float = Query(default=0, ge=0),
    max_entry_fee: float = Query(default=10000, ge=0),
    min_prize_pool: float | None = Query(default=None, ge=0),
    statuses: list[str] | None = Query(default=None),
    difficulty_levels: list[str] | None = Query(default=None),
    featured: bool | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    sort_by: str = Query(default="created_at"),
    sort_direction: str = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=12, ge=1, le=100),
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    filters = ContestSearchFilters(
        search=search,
        contest_types=contest_types or [],
        min_entry_fee=Decimal(str(min_entry_fee)),
        max_entry_fee=Decimal(str(max_entry_fee)),
        min_prize_pool=Decimal(str(min_prize_pool)) if min_prize_pool is not None else None,
        difficulty_levels=difficulty_levels or [],
        featured=featured,
        tags=tags or [],
        sort_by=sort_by,
        sort_direction=sort_direction,
        page=page,
        page_size=page_size,
    )
    if statuses:
        filters.statuses = statuses
    result = search_contests(db, filters, user.id if user else None)
    return ContestPageOut(
        data=[contest_to_out(contest, result.favorite_ids, result.joined_ids) for contest in result.contests],
        total_count=result.total_count,
        current_page=result.current_page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@app.get("/contests/tags", response_model=list[ContestTagOut])
def contests_tags(db: Session = Depends(get_db)):
    return [tag_to_out(tag) for tag in list_tags(db)]


@app.get("/contests/favorites", response_model=list[ContestOut])
def contests_favorites(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    contests = favorite_contests(db, auth.user.id)
    favorite_ids = {contest.id for contest in contests}
    return [contest_to_out(contest, favorite_ids=favorite_ids) for contest in contests]


@app.get("/contests/joined", response_model=list[JoinedContestOut])
def contests_joined(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return [
        JoinedContestOut(
            contest=contest_to_out(contest, joined_ids={contest.id}),
            team_id=int(participant.team_id),
            joined_at=participant.joined_at,
        )
        for contest, participant in joined_contests(db, auth.user.id)
    ]


@app.get("/contests/{contest_id}", response_model=ContestDetailsOut)
def contests_get(
    contest_id: int,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    contest = get_contest_or_404(db, contest_id)
    details = contest_details(db, contest, user.id if user else None)
    return ContestDetailsOut(
        contest=contest_to_out(
            contest,
            favorite_ids={contest.id} if details.is_favorited else set(),
            joined_ids={contest.id} if details.is_joined else set(),
        ),
        entry_fee_breakdown=EntryFeeBreakdownOut(
            platform_fee=float(details.platform_fee),
            prize_pool_contribution=float(details.prize_pool_contribution),
        ),
        rules=[
            ContestRuleOut(id=int(rule.id), rule_text=str(rule.rule_text), rule_order=int(rule.rule_order))
            for rule in details.rules
        ],
        prize_distribution=[
            PrizeSlotOut(
                rank=slot.rank,
                prize_amount=float(slot.prize_amount),
                prize_percentage=float(slot.prize_percentage),
            )
            for slot in details.prize_distribution
        ],
        user_teams=[
            UserTeamOut(
                id=int(team.id),
                name=str(team.name),
                stocks_count=len(team.stocks),
                total_value=float(team.total_value),
                is_selected=team.id == details.selected_team_id,
            )
            for team in details.user_teams
        ],
        is_joined=details.is_joined,
    )


@app.get("/contests/{contest_id}/leaderboard", response_model=list[LeaderboardEntryOut])
def contests_leaderboard(contest_id: int, db: Session = Depends(get_db)):
    get_contest_or_404(db, contest_id)
    return leaderboard_to_out(db, contest_id)


@app.post("/contests/{contest_id}/favorite", response_model=FavoriteToggleOut)
def contests_toggle_favorite(
    contest_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    try:
        is_favorited = toggle_favorite(db, auth.user.id, contest_id)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, "Favorite was updated concurrently. Try again.")
    return FavoriteToggleOut(contest_id=contest_id, is_favorited=is_favorited)


@app.post("/contests/{contest_id}/join", response_model=ContestJoinOut)
def contests_join(
    contest_id: int,
    payload: ContestJoinIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    participant = join_contest(db, contest_id, auth.user.id, payload.team_id)
    wallet = get_or_create_wallet(db, auth.user.id)
    out = ContestJoinOut(
        participant_id=int(participant.id),
        contest_id=contest_id,
        team_id=int(participant.team_id),
        new_balance=float(wallet.balance),
    )
    db.commit()
    return out


@app.post("/contests/{contest_id}/switch-team", response_model=ContestJoinOut)
def contests_switch_team(
    contest_id: int,
    payload: ContestJoinIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    participant = switch_team(db, contest_id, auth.user.id, payload.team_id)
    wallet = get_or_create_wallet(db, auth.user.id)
    out = ContestJoinOut(
        participant_id=int(participant.id),
        contest_id=contest_id,
        team_id=int(participant.team_id),
        new_balance=float(wallet.balance),
    )
    db.commit()
    return out


@app.get("/leaderboard", response_model=list[GlobalLeaderboardEntryOut])
def leaderboard(
    timeframe: str = Query(default="weekly"),
    db: Session = Depends(get_db),
):
    return [
        GlobalLeaderboardEntryOut(
            rank=row.rank,
            user_id=row.user_id,
            username=row.username,
            avatar_url=row.avatar_url,
            total_points=float(row.total_points),
            total_earnings=float(row.total_earnings),
            contests_won=row.contests_won,
            total_contests=row.total_contests,
            win_rate=float(row.win_rate),
        )
        for row in global_leaderboard(db, timeframe)
    ]


# Wallet


@app.get("/wallet", response_model=WalletOut)
def wallet_get(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    wallet = get_or_create_wallet(db, auth.user.id)
    out = wallet_to_out(wallet)
    db.commit()
    return out


@app.get("/wallet/transactions", response_model=TransactionListOut)
def wallet_transactions(
    type: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    rows, total = list_transactions(
        db,
        auth.user.id,
        type=type,
        status=status_filter,
        start_date=naive_utc(start_date),
        end_date=naive_utc(end_date),
        limit=limit,
        offset=offset,
    )
    return TransactionListOut(data=[transaction_to_out(tx) for tx in rows], total_count=total)


@app.get("/wallet/summary", response_model=TransactionSummaryOut)
def wallet_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    summary = transaction_summary(db, auth.user.id)
    return TransactionSummaryOut(
        total_deposits=float(summary.total_deposits),
        total_withdrawals=float(summary.total_withdrawals),
        total_winnings=float(summary.total_winnings),
        total_entry_fees=float(summary.total_entry_fees),
    )


@app.post("/wallet/deposit", response_model=DepositOut)
def wallet_deposit(
    payload: DepositIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    tx = deposit(
        db,
        auth.user.id,
        Decimal(str(payload.amount)),
        payment_method_id=payload.payment_method_id,
        reference_id=payload.reference_id,
        description=payload.description,
    )
    wallet = get_or_create_wallet(db, auth.user.id)
    out = DepositOut(transaction_id=int(tx.id), new_balance=float(wallet.balance))
    db.commit()
    return out


@app.post("/wallet/withdraw", response_model=WithdrawalRequestOut)
def wallet_withdraw(
    payload: WithdrawalIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    request = request_withdrawal(
        db,
        auth.user.id,
        Decimal(str(payload.amount)),
        payment_method_id=payload.payment_method_id,
        bank_details=payload.bank_details,
    )
    out = withdrawal_to_out(request)
    db.commit()
    return out


@app.get("/wallet/withdrawals", response_model=list[WithdrawalRequestOut])
def wallet_withdrawals(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return [withdrawal_to_out(request) for request in list_withdrawal_requests(db, auth.user.id)]


@app.get("/wallet/payment-methods", response_model=list[PaymentMethodOut])
def wallet_payment_methods(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return [payment_method_to_out(method) for method in list_payment_methods(db, auth.user.id)]


@app.post("/wallet/payment-methods", response_model=PaymentMethodOut)
def wallet_add_payment_method(
    payload: PaymentMethodIn,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    method = add_payment_method(
        db,
        auth.user.id,
        type=payload.type,
        name=payload.name,
        details=payload.details,
        is_default=payload.is_default,
    )
    out = payment_method_to_out(method)
    db.commit()
    return out


# Notifications


@app.get("/notifications", response_model=list[NotificationOut])
def notifications_list(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return [notification_to_out(item) for item in list_notifications(db, auth.user.id, limit=limit)]


@app.get("/notifications/unread-count", response_model=UnreadCountOut)
def notifications_unread_count(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    return UnreadCountOut(count=unread_count(db, auth.user.id))


@app.post("/notifications/read-all", response_model=MarkReadOut)
def notifications_read_all(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    updated = mark_all_as_read(db, auth.user.id)
    db.commit()
    return MarkReadOut(updated=updated)


@app.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def notifications_read(
    notification_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    notification = mark_as_read(db, auth.user.id, notification_id)
    if notification is None:
        raise HTTPException(404, "Notification not found")
    db.commit()
    return notification_to_out(notification)


# Admin


@app.post("/admin/contests", response_model=ContestOut)
def admin_create_contest(
    payload: ContestCreateIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    draft = ContestDraft(
        title=payload.title,
        description=payload.description,
        contest_type=payload.contest_type,
        difficulty=payload.difficulty,
        entry_fee=Decimal(str(payload.entry_fee)),
        max_participants=payload.max_participants,
        team_building_end_time=payload.team_building_end_time,
        start_time=payload.start_time,
        end_time=payload.end_time,
        first_place_pct=Decimal(str(payload.first_place_pct)),
        second_place_pct=Decimal(str(payload.second_place_pct)),
        third_place_pct=Decimal(str(payload.third_place_pct)),
        platform_fee_pct=Decimal(str(payload.platform_fee_pct)),
        featured=payload.featured,
        tags=payload.tags,
        rules=payload.rules,
    )
    contest = create_contest(db, draft, created_by=auth.user.id)
    out = contest_to_out(contest)
    db.commit()
    return out


@app.get("/admin/contests", response_model=list[ContestOut])
def admin_list_contests(
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=100),
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    stmt = select(Contest)
    if status_filter and status_filter != "all":
        stmt = stmt.where(Contest.status == status_filter)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(Contest.title.ilike(pattern), Contest.description.ilike(pattern)))
    contests = db.execute(stmt.order_by(Contest.created_at.desc(), Contest.id.desc())).scalars().all()
    return [contest_to_out(contest) for contest in contests]


@app.post("/admin/contests/auto-status", response_model=list[StatusChangeResultOut])
def admin_auto_status(
    payload: AutoStatusIn | None = None,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    market: MarketDataService = Depends(get_market),
):
    outcomes = run_auto_status_updates(db, now=payload.now if payload else None, market=market)
    db.commit()
    return [StatusChangeResultOut(**vars(outcome)) for outcome in outcomes]


@app.post("/admin/contests/bulk-status", response_model=list[StatusChangeResultOut])
def admin_bulk_status(
    payload: BulkStatusChangeIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    market: MarketDataService = Depends(get_market),
):
    outcomes = bulk_change_status(
        db,
        payload.contest_ids,
        payload.status,
        reason=payload.reason,
        changed_by=auth.user.id,
        market=market,
    )
    db.commit()
    return [StatusChangeResultOut(**vars(outcome)) for outcome in outcomes]


@app.post("/admin/contests/{contest_id}/status", response_model=ContestStatusChangeOut)
def admin_change_status(
    contest_id: int,
    payload: ContestStatusChangeIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    market: MarketDataService = Depends(get_market),
):
    contest = get_contest_or_404(db, contest_id, for_update=True)
    try:
        change = change_status(
            db,
            contest,
            payload.status,
            reason=payload.reason,
            changed_by=auth.user.id,
            market=market,
        )
    except ContestStatusError as exc:
        raise HTTPException(400, str(exc))
    out = ContestStatusChangeOut(
        contest_id=contest.id,
        from_status=change.from_status,
        to_status=change.to_status,
        reason=change.reason,
        changed_at=change.created_at,
    )
    db.commit()
    return out


@app.post("/admin/contests/{contest_id}/score", response_model=ScoreRefreshOut)
def admin_score_contest(
    contest_id: int,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
    market: MarketDataService = Depends(get_market),
):
    contest = get_contest_or_404(db, contest_id, for_update=True)
    if contest.status != "live":
        raise HTTPException(400, "Only live contests can be scored.")
    ranked = recalculate_scores(db, contest, market)
    db.commit()
    return ScoreRefreshOut(
        contest_id=contest.id,
        participants_scored=len(ranked),
        leaderboard=leaderboard_to_out(db, contest.id),
    )


@app.post("/admin/notifications", response_model=AdminNotificationOut)
def admin_send_notification(
    payload: AdminNotificationIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    if payload.user_ids:
        user_ids = [
            int(user_id)
            for user_id in db.execute(select(User.id).where(User.id.in_(payload.user_ids))).scalars()
        ]
    else:
        user_ids = [int(user_id) for user_id in db.execute(select(User.id).order_by(User.id)).scalars()]
    recipients = notify_users(
        db,
        user_ids,
        title=payload.title,
        message=payload.message,
        type=payload.type,
        link=payload.link,
    )
    db.commit()
    return AdminNotificationOut(recipients=recipients)


@app.post("/admin/withdrawals/{request_id}/process", response_model=WithdrawalRequestOut)
def admin_process_withdrawal(
    request_id: int,
    payload: WithdrawalProcessIn,
    auth: AuthContext = Depends(get_admin_context),
    db: Session = Depends(get_db),
):
    request = process_withdrawal(db, request_id, approve=payload.approve)
    out = withdrawal_to_out(request)
    db.commit()
    return out


# Realtime


def websocket_user(token: str | None) -> User | None:
    if not token:
        return None
    db = SessionLocal()
    try:
        session = find_active_session(db, token)
        if session is None:
            return None
        user = db.get(User, session.user_id)
        if user is not None:
            db.expunge(user)
        return user
    finally:
        db.close()


async def relay_channel(websocket: WebSocket, channel: str) -> None:
    """Forward feed events on `channel` to the socket until the client disconnects."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = feed.subscribe(channel, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event))
    await websocket.accept()

    receive_task = asyncio.ensure_future(websocket.receive())
    event_task = asyncio.ensure_future(queue.get())
    try:
        while True:
            done, _ = await asyncio.wait({receive_task, event_task}, return_when=asyncio.FIRST_COMPLETED)
            if event_task in done:
                await websocket.send_json(event_task.result())
                event_task = asyncio.ensure_future(queue.get())
            if receive_task in done:
                message = receive_task.result()
                if message.get("type") == "websocket.disconnect":
                    break
                receive_task = asyncio.ensure_future(websocket.receive())
    finally:
        unsubscribe()
        receive_task.cancel()
        event_task.cancel()


@app.websocket("/ws/notifications")
async def ws_notifications(websocket: WebSocket, token: str | None = None):
    user = await run_in_threadpool(websocket_user, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await relay_channel(websocket, notifications_channel(user.id))


@app.websocket("/ws/contests")
async def ws_contests(websocket: WebSocket, token: str | None = None):
    user = await run_in_threadpool(websocket_user, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await relay_channel(websocket, CONTESTS_CHANNEL)


QUOTE_STREAM_MAX_SYMBOLS = 20


def quote_stream_symbols(raw: str | None) -> list[str]:
    symbols = [symbol.strip().upper() for symbol in (raw or "").split(",") if symbol.strip()]
    return list(dict.fromkeys(symbols))[:QUOTE_STREAM_MAX_SYMBOLS]


@app.websocket("/ws/quotes")
async def ws_quotes(
    websocket: WebSocket,
    symbols: str | None = None,
    market: MarketDataService = Depends(get_market),
):
    """Push fresh quotes for `symbols` on connect and then once per quote cache period."""
    wanted = quote_stream_symbols(symbols)
    if not market.get_quotes(wanted):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    receive_task = asyncio.ensure_future(websocket.receive())
    tick_task = asyncio.ensure_future(asyncio.sleep(0))
    try:
        while True:
            done, _ = await asyncio.wait({receive_task, tick_task}, return_when=asyncio.FIRST_COMPLETED)
            if tick_task in done:
                quotes = [quote_to_out(quote).model_dump() for quote in market.get_quotes(wanted)]
                await websocket.send_json({"type": "quotes", "quotes": quotes})
                tick_task = asyncio.ensure_future(asyncio.sleep(QUOTE_CACHE_SECONDS))
            if receive_task in done:
                message = receive_task.result()
                if message.get("type") == "websocket.disconnect":
                    break
                receive_task = asyncio.ensure_future(websocket.receive())
    finally:
        receive_task.cancel()
        tick_task.cancel()
