"""Team composition rules: role slots, budget, auto-fill and the validation checklist.

Everything here works on plain `StockPick` values so the same rules back the
`/teams/validate` preview and the persisted team.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, Sequence


@dataclass(frozen=True)
class RoleConfig:
    key: str
    name: str
    multiplier: Decimal
    max_count: int
    description: str


ROLE_CONFIGS: dict[str, RoleConfig] = {
    config.key: config
    for config in (
        RoleConfig("captain", "Captain", Decimal("2.5"), 1, "Earns 2.5x points from stock performance"),
        RoleConfig("all-rounder", "All Rounder", Decimal("2.25"), 1, "Earns 2.25x points from stock performance"),
        RoleConfig("vice-captain", "Vice-Captain", Decimal("2.0"), 1, "Earns 2x points from stock performance"),
        RoleConfig("wicket-keeper", "Wicket Keeper", Decimal("1.5"), 1, "Earns 1.5x points from stock performance"),
        RoleConfig("batsman", "Batsman", Decimal("1.25"), 4, "Earns 1.25x points from stock performance"),
        RoleConfig("bowler", "Bowler", Decimal("1.2"), 3, "Earns 1.20x points from stock performance"),
    )
}

TEAM_BUDGET = Decimal(os.environ.get("TEAM_BUDGET", "100000000"))
MAX_TEAM_SIZE = 11
NEAR_BUDGET_PERCENT = Decimal("90")
AUTO_FILL_PRICE_HEADROOM = Decimal("1.5")

if sum(config.max_count for config in ROLE_CONFIGS.values()) != MAX_TEAM_SIZE:
    raise RuntimeError("Role slot counts must add up to MAX_TEAM_SIZE.")


class TeamCompositionError(ValueError):
    pass


@dataclass(frozen=True)
class StockPick:
    symbol: str
    name: str
    price: float
    change: float = 0.0
    change_percent: float = 0.0
    sector: str | None = None
    role: str | None = None
    multiplier: float = 1.0


@dataclass(frozen=True)
class BudgetSummary:
    budget: Decimal
    total_spent: Decimal
    remaining: Decimal
    used_percent: Decimal
    is_over_budget: bool
    is_near_budget: bool
    stocks_selected: int
    average_price: Decimal


@dataclass(frozen=True)
class ValidationRule:
    id: str
    name: str
    is_valid: bool
    message: str
    type: str  # success, error


def role_config_or_raise(role: str) -> RoleConfig:
    config = ROLE_CONFIGS.get(role)
    if config is None:
        raise TeamCompositionError(f"Unknown role '{role}'.")
    return config


def total_spent(stocks: Iterable[StockPick]) -> Decimal:
    return sum((Decimal(str(stock.price)) for stock in stocks), Decimal("0"))


def budget_summary(stocks: Sequence[StockPick], budget: Decimal = TEAM_BUDGET) -> BudgetSummary:
    spent = total_spent(stocks)
    used_percent = (spent / budget * 100) if budget > 0 else Decimal("0")
    is_over = spent > budget
    return BudgetSummary(
        budget=budget,
        total_spent=spent,
        remaining=budget - spent,
        used_percent=used_percent,
        is_over_budget=is_over,
        is_near_budget=used_percent > NEAR_BUDGET_PERCENT and not is_over,
        stocks_selected=len(stocks),
        average_price=(spent / len(stocks)) if stocks else Decimal("0"),
    )


def role_counts(stocks: Iterable[StockPick]) -> dict[str, int]:
    counts = {key: 0 for key in ROLE_CONFIGS}
    for stock in stocks:
        if stock.role in counts:
            counts[stock.role] += 1
    return counts


def role_slots(stocks: Sequence[StockPick], role: str) -> list[StockPick | None]:
    """Filled picks for `role` followed by `None` for each open slot."""
    config = role_config_or_raise(role)
    filled: list[StockPick | None] = [stock for stock in stocks if stock.role == role]
    return filled + [None] * max(0, config.max_count - len(filled))


def has_open_slot(stocks: Sequence[StockPick], role: str) -> bool:
    config = role_config_or_raise(role)
    return role_counts(stocks)[role] < config.max_count


def next_available_role(stocks: Sequence[StockPick]) -> str:
    counts = role_counts(stocks)
    for key, config in ROLE_CONFIGS.items():
        if counts[key] < config.max_count:
            return key
    raise TeamCompositionError("All role slots are filled.")


def with_role(stock: StockPick, role: str) -> StockPick:
    config = role_config_or_raise(role)
    return replace(stock, role=role, multiplier=float(config.multiplier))


def add_stock(
    stocks: Sequence[StockPick],
    pick: StockPick,
    role: str | None = None,
    budget: Decimal = TEAM_BUDGET,
) -> list[StockPick]:
    symbol = pick.symbol.strip().upper()
    if any(stock.symbol.upper() == symbol for stock in stocks):
        raise TeamCompositionError("Stock already in your team")
    if len(stocks) >= MAX_TEAM_SIZE:
        raise TeamCompositionError(f"Team is full! Maximum {MAX_TEAM_SIZE} stocks allowed")
    if total_spent(stocks) + Decimal(str(pick.price)) > budget:
        raise TeamCompositionError("Adding this stock would exceed your budget")

    if role is None:
        role = next_available_role(stocks)
    elif not has_open_slot(stocks, role):
        raise TeamCompositionError(f"No open {role_config_or_raise(role).name} slot.")

    return [*stocks, with_role(replace(pick, symbol=symbol), role)]


def remove_stock(stocks: Sequence[StockPick], symbol: str) -> list[StockPick]:
    target = symbol.strip().upper()
    remaining = [stock for stock in stocks if stock.symbol.upper() != target]
    if len(remaining) == len(stocks):
        raise TeamCompositionError(f"{target} is not in your team.")
    return remaining


def reassign_role(stocks: Sequence[StockPick], symbol: str, new_role: str) -> list[StockPick]:
    target = symbol.strip().upper()
    current = next((stock for stock in stocks if stock.symbol.upper() == target), None)
    if current is None:
        raise TeamCompositionError(f"{target} is not in your team.")
    if current.role == new_role:
        return list(stocks)
    if not has_open_slot(stocks, new_role):
        raise TeamCompositionError(f"No open {ROLE_CONFIGS[new_role].name} slot.")
    return [with_role(stock, new_role) if stock is current else stock for stock in stocks]


def auto_fill(
    stocks: Sequence[StockPick],
    available: Sequence[StockPick],
    budget: Decimal = TEAM_BUDGET,
) -> list[StockPick]:
    """
    Fill the open slots with the strongest affordable movers.

    Candidates must cost at most 1.5x the remaining budget per open slot. The best
    performers by change percent are taken first, and each gets the next free role
    against the team as it grows. Fewer stocks than open slots may be added when the
    price filter leaves too few candidates.
    """
    slots = MAX_TEAM_SIZE - len(stocks)
    if slots <= 0:
        raise TeamCompositionError("Team is already full!")

    used = {stock.symbol.upper() for stock in stocks}
    unused = [stock for stock in available if stock.symbol.upper() not in used]
    if len(unused) < slots:
        raise TeamCompositionError("Not enough stocks available to complete team")

    remaining_budget = budget - total_spent(stocks)
    per_stock_budget = remaining_budget / slots
    price_ceiling = per_stock_budget * AUTO_FILL_PRICE_HEADROOM
    candidates = [stock for stock in unused if Decimal(str(stock.price)) <= price_ceiling]
    candidates.sort(key=lambda stock: stock.change_percent, reverse=True)

    team = list(stocks)
    for candidate in candidates[:slots]:
        team.append(with_role(replace(candidate, symbol=candidate.symbol.upper()), next_available_role(team)))
    return team


def validate_team(
    stocks: Sequence[StockPick],
    team_name: str,
    budget: Decimal = TEAM_BUDGET,
) -> list[ValidationRule]:
    rules: list[ValidationRule] = []

    name_ok = len((team_name or "").strip()) >= 3
    rules.append(
        ValidationRule(
            id="team-name",
            name="Team Name",
            is_valid=name_ok,
            message="Team name is valid" if name_ok else "Team name must be at least 3 characters",
            type="success" if name_ok else "error",
        )
    )

    size_ok = len(stocks) == MAX_TEAM_SIZE
    if size_ok:
        size_message = f"Team has {MAX_TEAM_SIZE} stocks"
    elif len(stocks) < MAX_TEAM_SIZE:
        size_message = f"Team needs {MAX_TEAM_SIZE - len(stocks)} more stocks"
    else:
        size_message = f"Team has {len(stocks) - MAX_TEAM_SIZE} too many stocks"
    rules.append(
        ValidationRule(
            id="team-size",
            name="Team Size",
            is_valid=size_ok,
            message=size_message,
            type="success" if size_ok else "error",
        )
    )

    spent = total_spent(stocks)
    budget_ok = spent <= budget
    rules.append(
        ValidationRule(
            id="budget",
            name="Budget",
            is_valid=budget_ok,
            message="Within budget limit" if budget_ok else f"Over budget by ${spent - budget:,.0f}",
            type="success" if budget_ok else "error",
        )
    )

    counts = role_counts(stocks)
    for key, config in ROLE_CONFIGS.items():
        count = counts[key]
        role_ok = count == config.max_count
        plural = "s" if config.max_count > 1 else ""
        if role_ok:
            message = f"{config.name} position filled"
        elif count < config.max_count:
            message = f"Need {config.max_count - count} more {config.name}{plural}"
        else:
            message = f"Too many {config.name}{plural}: {count} of {config.max_count}"
        rules.append(
            ValidationRule(
                id=f"role-{key}",
                name=config.name,
                is_valid=role_ok,
                message=message,
                type="success" if role_ok else "error",
            )
        )

    seen: set[str] = set()
    duplicates: list[str] = []
    for stock in stocks:
        symbol = stock.symbol.upper()
        if symbol in seen and symbol not in duplicates:
            duplicates.append(symbol)
        seen.add(symbol)
    rules.append(
        ValidationRule(
            id="duplicates",
            name="Unique Stocks",
            is_valid=not duplicates,
            message=f"Duplicate stocks found: {', '.join(duplicates)}" if duplicates else "All stocks are unique",
            type="error" if duplicates else "success",
        )
    )
    return rules


def is_team_valid(rules: Iterable[ValidationRule]) -> bool:
    return not any(not rule.is_valid and rule.type == "error" for rule in rules)


def first_error_message(rules: Iterable[ValidationRule]) -> str | None:
    for rule in rules:
        if not rule.is_valid and rule.type == "error":
            return rule.message
    return None
