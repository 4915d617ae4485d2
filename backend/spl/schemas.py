from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class UserOut(BaseModel):
    id: int
    username: str
    email: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    role: str = "user"
    is_admin: bool = False


class AuthRegisterIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8, max_length=128)
    email: str | None = Field(default=None, max_length=255)
    full_name: str | None = Field(default=None, max_length=128)


class AuthLoginIn(BaseModel):
    username: str = Field(min_length=1, max_length=255, description="Username or email.")
    password: str = Field(min_length=1, max_length=128)


class AuthSessionOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserOut


class OkOut(BaseModel):
    ok: bool = True


class AuthPasswordUpdateIn(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class PasswordResetRequestIn(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class PasswordResetRequestOut(BaseModel):
    ok: bool = True
    # Only returned when RETURN_RESET_TOKENS is enabled (no mail delivery in sandbox).
    reset_token: str | None = None


class PasswordResetConfirmIn(BaseModel):
    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=8, max_length=128)


class UserProfileUpdateIn(BaseModel):
    full_name: str | None = Field(default=None, max_length=128)
    avatar_url: str | None = Field(default=None, max_length=512)
    bio: str | None = Field(default=None, max_length=1000)


class UserProfileOut(BaseModel):
    user: UserOut
    teams_count: int
    contests_joined: int
    contests_won: int
    total_winnings: float
    balance: float


# Stocks


class StockQuoteOut(BaseModel):
    symbol: str
    name: str
    price: float
    change: float
    change_percent: float
    volume: int
    market_cap: float | None = None
    pe_ratio: float | None = None
    sector: str | None = None
    logo: str | None = None


class StockSearchResultOut(BaseModel):
    symbol: str
    name: str
    type: str
    region: str
    market_open: str
    market_close: str
    timezone: str
    currency: str
    match_score: str


class StockPricePointOut(BaseModel):
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int


# Teams


class RoleConfigOut(BaseModel):
    key: str
    name: str
    multiplier: float
    max_count: int
    description: str


class TeamStockIn(BaseModel):
    symbol: str = Field(min_length=1, max_length=16)
    role: str | None = None


class TeamStockOut(BaseModel):
    symbol: str
    name: str
    sector: str | None = None
    price: float
    change: float
    change_percent: float
    role: str | None = None
    multiplier: float


class ValidationRuleOut(BaseModel):
    id: str
    name: str
    is_valid: bool
    message: str
    type: str


class BudgetOut(BaseModel):
    budget: float
    total_spent: float
    remaining: float
    used_percent: float
    is_over_budget: bool
    is_near_budget: bool
    stocks_selected: int
    average_price: float


class TeamDraftIn(BaseModel):
    name: str = Field(default="", max_length=100)
    stocks: list[TeamStockIn] = Field(default_factory=list, max_length=20)


class TeamValidationOut(BaseModel):
    is_valid: bool
    rules: list[ValidationRuleOut]
    budget: BudgetOut
    stocks: list[TeamStockOut]


class TeamAutoFillOut(BaseModel):
    stocks: list[TeamStockOut]
    added: list[str]
    budget: BudgetOut


class TeamCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    stocks: list[TeamStockIn] = Field(min_length=1, max_length=20)
    contest_id: int | None = None


class TeamRoleUpdateIn(BaseModel):
    symbol: str = Field(min_length=1, max_length=16)
    role: str


class TeamOut(BaseModel):
    id: int
    name: str
    total_value: float
    stocks: list[TeamStockOut]
    is_locked: bool = False
    created_at: datetime
    updated_at: datetime


class TeamCreateOut(BaseModel):
    team: TeamOut
    contest_id: int | None = None
    participant_id: int | None = None


# Contests


class ContestTagOut(BaseModel):
    id: int
    name: str
    description: str | None = None
    color: str | None = None


class ContestOut(BaseModel):
    id: int
    title: str
    description: str
    contest_type: str
    difficulty: str
    entry_fee: float
    prize_pool: float
    max_participants: int
    current_participants: int
    status: str
    featured: bool
    team_building_end_time: datetime
    start_time: datetime
    end_time: datetime
    first_place_pct: float
    second_place_pct: float
    third_place_pct: float
    platform_fee_pct: float
    created_by: int | None = None
    created_at: datetime
    updated_at: datetime
    tags: list[ContestTagOut] = Field(default_factory=list)
    is_favorited: bool = False
    is_joined: bool = False


class ContestPageOut(BaseModel):
    data: list[ContestOut]
    total_count: int
    current_page: int
    page_size: int
    total_pages: int


class ContestCreateIn(BaseModel):
    title: str = Field(max_length=200)
    description: str = Field(max_length=1000)
    contest_type: str = "tournament"
    difficulty: str = "beginner"
    entry_fee: float = 100
    max_participants: int = 100
    team_building_end_time: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    first_place_pct: float = 50
    second_place_pct: float = 25
    third_place_pct: float = 10
    platform_fee_pct: float = 15
    featured: bool = False
    tags: list[str] = Field(default_factory=list, max_length=20)
    rules: list[str] = Field(default_factory=list, max_length=50)


class ContestRuleOut(BaseModel):
    id: int
    rule_text: str
    rule_order: int


class PrizeSlotOut(BaseModel):
    rank: int
    prize_amount: float
    prize_percentage: float


class EntryFeeBreakdownOut(BaseModel):
    platform_fee: float
    prize_pool_contribution: float


class UserTeamOut(BaseModel):
    id: int
    name: str
    stocks_count: int
    total_value: float
    is_selected: bool


class ContestDetailsOut(BaseModel):
    contest: ContestOut
    entry_fee_breakdown: EntryFeeBreakdownOut
    rules: list[ContestRuleOut]
    prize_distribution: list[PrizeSlotOut]
    user_teams: list[UserTeamOut]
    is_joined: bool


class ContestJoinIn(BaseModel):
    team_id: int


class ContestJoinOut(BaseModel):
    ok: bool = True
    participant_id: int
    contest_id: int
    team_id: int
    new_balance: float


class FavoriteToggleOut(BaseModel):
    contest_id: int
    is_favorited: bool


class JoinedContestOut(BaseModel):
    contest: ContestOut
    team_id: int
    joined_at: datetime


class LeaderboardEntryOut(BaseModel):
    participant_id: int
    user_id: int
    username: str
    avatar_url: str | None = None
    team_name: str
    current_rank: int
    previous_rank: int
    points: float
    points_change: float
    prize_amount: float = 0


class GlobalLeaderboardEntryOut(BaseModel):
    rank: int
    user_id: int
    username: str
    avatar_url: str | None = None
    total_points: float
    total_earnings: float
    contests_won: int
    total_contests: int
    win_rate: float


# Admin


ContestStatus = Literal["upcoming", "live", "completed", "cancelled"]


class ContestStatusChangeIn(BaseModel):
    status: ContestStatus
    reason: str | None = Field(default=None, max_length=500)


class ContestStatusChangeOut(BaseModel):
    contest_id: int
    from_status: str
    to_status: str
    reason: str | None = None
    changed_at: datetime


class BulkStatusChangeIn(BaseModel):
    contest_ids: list[int] = Field(min_length=1, max_length=500)
    status: ContestStatus
    reason: str | None = Field(default=None, max_length=500)


class StatusChangeResultOut(BaseModel):
    contest_id: int
    ok: bool
    from_status: str | None = None
    to_status: str | None = None
    error: str | None = None


class AutoStatusIn(BaseModel):
    now: datetime | None = None


class ScoreRefreshOut(BaseModel):
    contest_id: int
    participants_scored: int
    leaderboard: list[LeaderboardEntryOut]


class AdminNotificationIn(BaseModel):
    title: str = Field(min_length=1, max_length=160)
    message: str = Field(min_length=1, max_length=2000)
    type: Literal["general", "contest", "achievement", "payment"] = "general"
    link: str | None = Field(default=None, max_length=255)
    user_ids: list[int] | None = None


class AdminNotificationOut(BaseModel):
    recipients: int


class WithdrawalProcessIn(BaseModel):
    approve: bool


# Wallet


class WalletOut(BaseModel):
    id: int
    user_id: int
    balance: float
    locked_balance: float
    available_balance: float
    total_deposited: float
    total_withdrawn: float
    total_winnings: float
    created_at: datetime
    updated_at: datetime


class TransactionOut(BaseModel):
    id: int
    amount: float
    type: str
    status: str
    description: str | None = None
    reference_id: str | None = None
    payment_method_id: int | None = None
    contest_id: int | None = None
    created_at: datetime


class TransactionListOut(BaseModel):
    data: list[TransactionOut]
    total_count: int


class TransactionSummaryOut(BaseModel):
    total_deposits: float
    total_withdrawals: float
    total_winnings: float
    total_entry_fees: float


class DepositIn(BaseModel):
    amount: float = Field(gt=0)
    payment_method_id: int | None = None
    reference_id: str | None = Field(default=None, max_length=128)
    description: str = Field(default="Wallet deposit", max_length=255)


class DepositOut(BaseModel):
    transaction_id: int
    new_balance: float


class WithdrawalIn(BaseModel):
    amount: float = Field(gt=0)
    payment_method_id: int | None = None
    bank_details: dict[str, Any] | None = None


class WithdrawalRequestOut(BaseModel):
    id: int
    user_id: int
    amount: float
    status: str
    payment_method_id: int | None = None
    bank_details: dict[str, Any] | None = None
    created_at: datetime
    processed_at: datetime | None = None


class PaymentMethodIn(BaseModel):
    type: str
    name: str = Field(min_length=1, max_length=128)
    details: dict[str, Any] = Field(default_factory=dict)
    is_default: bool = False


class PaymentMethodOut(BaseModel):
    id: int
    type: str
    name: str
    details: dict[str, Any]
    is_default: bool
    last_used_at: datetime | None = None
    created_at: datetime


# Notifications


class NotificationOut(BaseModel):
    id: int
    title: str
    message: str
    type: str
    is_read: bool
    link: str | None = None
    created_at: datetime


class UnreadCountOut(BaseModel):
    count: int


class MarkReadOut(BaseModel):
    updated: int
