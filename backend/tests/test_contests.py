from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from spl.contests import (
    AUTO_COMPLETE_REASON,
    AUTO_START_REASON,
    ContestDraft,
    apply_draft_defaults,
    can_change_status,
    due_transitions,
    next_trading_day,
    validate_contest_draft,
)
from spl.models import Contest


NOW = datetime(2024, 3, 14, 12, 0)  # Thursday


def draft(**overrides) -> ContestDraft:
    values = dict(
        title="Friday Flash",
        description="A single session contest.",
        team_building_end_time=NOW + timedelta(hours=1),
        start_time=NOW + timedelta(hours=2),
        end_time=NOW + timedelta(hours=8),
    )
    values.update(overrides)
    return ContestDraft(**values)


def contest(status: str, participants: int = 0, start_offset: int = -1, end_offset: int = 5) -> Contest:
    return Contest(
        id=1,
        title="T",
        status=status,
        current_participants=participants,
        max_participants=10,
        start_time=NOW + timedelta(hours=start_offset),
        end_time=NOW + timedelta(hours=end_offset),
    )


@pytest.mark.parametrize(
    "current,new,allowed",
    [
        ("upcoming", "live", True),
        ("upcoming", "cancelled", True),
        ("upcoming", "completed", False),
        ("live", "completed", True),
        ("live", "cancelled", True),
        ("live", "upcoming", False),
        ("completed", "cancelled", False),
        ("cancelled", "live", False),
    ],
)
def test_status_transitions(current, new, allowed):
    assert can_change_status(current, new) is allowed


def test_next_trading_day_skips_weekend():
    assert next_trading_day(datetime(2024, 3, 14, 10)) == date(2024, 3, 15)
    assert next_trading_day(datetime(2024, 3, 15, 10)) == date(2024, 3, 18)
    assert next_trading_day(datetime(2024, 3, 16, 10)) == date(2024, 3, 18)


def test_apply_draft_defaults_schedules_next_session():
    result = apply_draft_defaults(ContestDraft(title="Flash", description="Session contest"), NOW)
    assert result.team_building_end_time == datetime(2024, 3, 15, 9, 0)
    assert result.start_time == datetime(2024, 3, 15, 9, 30)
    assert result.end_time == datetime(2024, 3, 15, 15, 30)


def test_head_to_head_is_always_two_seats():
    result = apply_draft_defaults(draft(contest_type="head-to-head", max_participants=50), NOW)
    assert result.max_participants == 2


def test_valid_draft_has_no_errors():
    assert validate_contest_draft(draft(), NOW) == []


def test_draft_validation_messages():
    errors = validate_contest_draft(
        draft(
            title="ab",
            description="short",
            entry_fee=Decimal("-1"),
            max_participants=1,
            first_place_pct=Decimal("80"),
            platform_fee_pct=Decimal("10"),
        ),
        NOW,
    )
    assert "Title must be at least 3 characters" in errors
    assert "Description must be at least 10 characters" in errors
    assert "Entry fee cannot be negative" in errors
    assert "Minimum 2 participants" in errors
    assert "First place maximum 70%" in errors
    assert "Platform fee minimum 15%" in errors


def test_draft_schedule_validation():
    errors = validate_contest_draft(
        draft(
            team_building_end_time=NOW + timedelta(hours=3),
            start_time=NOW + timedelta(hours=2),
            end_time=NOW + timedelta(hours=1),
        ),
        NOW,
    )
    assert "Contest end time must be after start time" in errors
    assert "Start time must be after team building end time" in errors


def test_draft_rejects_past_start_and_oversized_prizes():
    errors = validate_contest_draft(
        draft(
            team_building_end_time=NOW - timedelta(hours=2),
            start_time=NOW - timedelta(hours=1),
            first_place_pct=Decimal("60"),
            second_place_pct=Decimal("20"),
            third_place_pct=Decimal("10"),
            platform_fee_pct=Decimal("15"),
        ),
        NOW,
    )
    assert "Start time must be in the future" in errors
    assert "Prize distribution cannot exceed 100%" in errors


def test_due_transitions():
    ready = contest("upcoming", participants=2)
    lonely = contest("upcoming", participants=1)
    not_yet = contest("upcoming", participants=5, start_offset=1)
    finished = contest("live", end_offset=-1)
    running = contest("live", end_offset=1)
    done = contest("completed", end_offset=-1)

    due = due_transitions([ready, lonely, not_yet, finished, running, done], NOW)
    assert due == [(ready, "live", AUTO_START_REASON), (finished, "completed", AUTO_COMPLETE_REASON)]


# API


def test_create_contest_requires_admin(client, register):
    user = register("alice")
    response = client.post("/admin/contests", json={"title": "Nope", "description": "Not allowed here"}, headers=user["headers"])
    assert response.status_code == 403


def test_create_contest_validation_errors(client, admin_headers):
    response = client.post(
        "/admin/contests",
        json={"title": "ab", "description": "too short"},
        headers=admin_headers,
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["message"] == "Contest validation failed."
    assert "Title must be at least 3 characters" in detail["errors"]


def test_created_contest_prize_pool_and_tags(create_contest):
    contest = create_contest(entry_fee=25, max_participants=40, tags=["Daily", "Rookies"])
    assert contest["status"] == "upcoming"
    assert contest["prize_pool"] == 1000
    assert contest["current_participants"] == 0
    assert sorted(tag["name"] for tag in contest["tags"]) == ["Daily", "Rookies"]


def test_search_filters_and_pagination(client, create_contest):
    create_contest(title="Tech Titans", entry_fee=500, contest_type="mega-contest", max_participants=100)
    create_contest(title="Penny Pinchers", entry_fee=10)
    create_contest(title="Head On", contest_type="head-to-head")

    response = client.get("/contests", params={"min_entry_fee": 100})
    titles = {row["title"] for row in response.json()["data"]}
    assert titles == {"Tech Titans", "Head On"}

    response = client.get("/contests", params={"contest_types": ["head-to-head"]})
    assert [row["title"] for row in response.json()["data"]] == ["Head On"]
    assert response.json()["data"][0]["max_participants"] == 2

    response = client.get("/contests", params={"search": "penny"})
    assert [row["title"] for row in response.json()["data"]] == ["Penny Pinchers"]

    response = client.get("/contests", params={"page_size": 2, "page": 2, "sort_by": "title", "sort_direction": "asc"})
    body = response.json()
    assert body["total_count"] == 3
    assert body["total_pages"] == 2
    assert [row["title"] for row in body["data"]] == ["Tech Titans"]


def test_search_rejects_unknown_sort(client):
    response = client.get("/contests", params={"sort_by": "password"})
    assert response.status_code == 400


def test_tags_listing(client):
    names = [tag["name"] for tag in client.get("/contests/tags").json()]
    assert "Daily" in names
    assert names == sorted(names)


def test_favorite_toggle(client, register, create_contest):
    user = register("alice")
    contest = create_contest()

    response = client.post(f"/contests/{contest['id']}/favorite", headers=user["headers"])
    assert response.json() == {"contest_id": contest["id"], "is_favorited": True}
    favorites = client.get("/contests/favorites", headers=user["headers"]).json()
    assert [row["id"] for row in favorites] == [contest["id"]]
    listed = client.get("/contests", headers=user["headers"]).json()["data"]
    assert listed[0]["is_favorited"] is True

    response = client.post(f"/contests/{contest['id']}/favorite", headers=user["headers"])
    assert response.json()["is_favorited"] is False
    assert client.get("/contests/favorites", headers=user["headers"]).json() == []


def test_join_charges_fee_and_updates_counts(client, register, create_contest, create_team):
    user = register("alice")
    contest = create_contest(entry_fee=100)
    team = create_team(user["headers"])["team"]

    response = client.post(f"/contests/{contest['id']}/join", json={"team_id": team["id"]}, headers=user["headers"])
    assert response.status_code == 200, response.text
    assert response.json()["new_balance"] == 900

    details = client.get(f"/contests/{contest['id']}", headers=user["headers"]).json()
    assert details["is_joined"] is True
    assert details["contest"]["current_participants"] == 1
    assert details["user_teams"][0]["is_selected"] is True
    assert details["entry_fee_breakdown"] == {"platform_fee": 15, "prize_pool_contribution": 85}

    joined = client.get("/contests/joined", headers=user["headers"]).json()
    assert [row["contest"]["id"] for row in joined] == [contest["id"]]


def test_join_twice_is_rejected(client, register, create_contest, create_team):
    user = register("alice")
    contest = create_contest()
    team = create_team(user["headers"], contest_id=contest["id"])["team"]
    response = client.post(f"/contests/{contest['id']}/join", json={"team_id": team["id"]}, headers=user["headers"])
    assert response.status_code == 400
    assert response.json()["detail"] == "You have already joined this contest"


def test_join_with_someone_elses_team(client, register, create_contest, create_team):
    alice = register("alice")
    bob = register("bob")
    contest = create_contest()
    team = create_team(alice["headers"])["team"]
    response = client.post(f"/contests/{contest['id']}/join", json={"team_id": team["id"]}, headers=bob["headers"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Team not found or does not belong to you"


def test_join_with_insufficient_balance(client, register, create_contest, create_team):
    user = register("alice")
    contest = create_contest(entry_fee=5000)
    team = create_team(user["headers"])["team"]
    response = client.post(f"/contests/{contest['id']}/join", json={"team_id": team["id"]}, headers=user["headers"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Insufficient wallet balance"
    assert client.get("/wallet", headers=user["headers"]).json()["balance"] == 1000


def test_join_full_contest(client, register, create_contest, create_team):
    contest = create_contest(contest_type="head-to-head", entry_fee=10)
    for name in ("alice", "bob"):
        user = register(name)
        create_team(user["headers"], contest_id=contest["id"])
    carol = register("carol")
    team = create_team(carol["headers"])["team"]
    response = client.post(f"/contests/{contest['id']}/join", json={"team_id": team["id"]}, headers=carol["headers"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Contest is full"


def test_join_after_team_building_window(client, register, create_contest, create_team, db):
    user = register("alice")
    contest = create_contest()
    row = db.get(Contest, contest["id"])
    row.team_building_end_time = datetime.utcnow() - timedelta(minutes=1)
    db.commit()

    team = create_team(user["headers"])["team"]
    response = client.post(f"/contests/{contest['id']}/join", json={"team_id": team["id"]}, headers=user["headers"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Team building period has ended for this contest"


def test_switch_team_before_start(client, register, create_contest, create_team):
    user = register("alice")
    contest = create_contest()
    create_team(user["headers"], name="First", contest_id=contest["id"])
    second = create_team(user["headers"], name="Second")["team"]

    response = client.post(
        f"/contests/{contest['id']}/switch-team",
        json={"team_id": second["id"]},
        headers=user["headers"],
    )
    assert response.status_code == 200, response.text
    assert response.json()["team_id"] == second["id"]
    assert response.json()["new_balance"] == 900


def test_incomplete_team_cannot_join_or_switch(client, register, create_contest, create_team):
    user = register("alice")
    contest = create_contest()
    entered = create_team(user["headers"], name="Entered", contest_id=contest["id"])["team"]
    short = create_team(user["headers"], name="Short")["team"]
    client.delete(f"/teams/{short['id']}/stocks/KO", headers=user["headers"])

    response = client.post(
        f"/contests/{contest['id']}/switch-team",
        json={"team_id": short["id"]},
        headers=user["headers"],
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["message"] == "Team is not valid."
    assert {rule["id"] for rule in detail["rules"]} == {"team-size", "role-bowler"}
    assert [row["team_id"] for row in client.get("/contests/joined", headers=user["headers"]).json()] == [entered["id"]]

    other = create_contest(title="Second Session")
    response = client.post(
        f"/contests/{other['id']}/join",
        json={"team_id": short["id"]},
        headers=user["headers"],
    )
    assert response.status_code == 400
    assert response.json()["detail"]["message"] == "Team is not valid."
    assert client.get("/wallet", headers=user["headers"]).json()["balance"] == 900


def test_manual_status_change_and_invalid_transition(client, admin_headers, register, create_contest, create_team):
    contest = create_contest()
    for name in ("alice", "bob"):
        create_team(register(name)["headers"], contest_id=contest["id"])
    response = client.post(
        f"/admin/contests/{contest['id']}/status",
        json={"status": "completed"},
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot change status from upcoming to completed"

    response = client.post(
        f"/admin/contests/{contest['id']}/status",
        json={"status": "live", "reason": "Manual start"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["from_status"] == "upcoming"
    assert response.json()["to_status"] == "live"


def test_bulk_status_reports_each_contest(client, admin_headers, create_contest):
    first = create_contest(title="First One")
    second = create_contest(title="Second One")
    client.post(f"/admin/contests/{second['id']}/status", json={"status": "cancelled"}, headers=admin_headers)

    response = client.post(
        "/admin/contests/bulk-status",
        json={"contest_ids": [first["id"], second["id"], 9999], "status": "cancelled"},
        headers=admin_headers,
    )
    results = {row["contest_id"]: row for row in response.json()}
    assert results[first["id"]]["ok"] is True
    assert results[second["id"]]["ok"] is False
    assert results[second["id"]]["error"] == "Cannot change status from cancelled to cancelled"
    assert results[9999]["error"] == "Contest not found"


def test_going_live_needs_two_participants(client, admin_headers, register, create_contest, create_team):
    contest = create_contest()
    create_team(register("alice")["headers"], contest_id=contest["id"])

    response = client.post(
        f"/admin/contests/{contest['id']}/status",
        json={"status": "live"},
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "At least 2 participants are required to go live"

    response = client.post(
        "/admin/contests/bulk-status",
        json={"contest_ids": [contest["id"]], "status": "live"},
        headers=admin_headers,
    )
    assert response.json()[0]["ok"] is False
    assert client.get(f"/contests/{contest['id']}").json()["contest"]["status"] == "upcoming"


def test_auto_status_full_lifecycle(client, admin_headers, register, create_contest, create_team):
    contest = create_contest(entry_fee=100)
    users = [register(name) for name in ("alice", "bob", "carol")]
    for user in users:
        create_team(user["headers"], contest_id=contest["id"])

    start = datetime.fromisoformat(contest["start_time"])
    end = datetime.fromisoformat(contest["end_time"])

    response = client.post(
        "/admin/contests/auto-status",
        json={"now": (start + timedelta(minutes=1)).isoformat()},
        headers=admin_headers,
    )
    assert response.json() == [
        {"contest_id": contest["id"], "ok": True, "from_status": "upcoming", "to_status": "live", "error": None}
    ]

    board = client.get(f"/contests/{contest['id']}/leaderboard").json()
    assert [row["username"] for row in board] == ["alice", "bob", "carol"]
    assert [row["current_rank"] for row in board] == [1, 2, 3]

    teams = client.get("/teams", headers=users[0]["headers"]).json()
    assert teams[0]["is_locked"] is True

    response = client.post(
        "/admin/contests/auto-status",
        json={"now": (end + timedelta(minutes=1)).isoformat()},
        headers=admin_headers,
    )
    assert response.json()[0]["to_status"] == "completed"

    # Identical teams tie on points, so join order decides: 300 collected, 50/25/10 split.
    board = client.get(f"/contests/{contest['id']}/leaderboard").json()
    assert [row["prize_amount"] for row in board] == [150, 75, 30]
    balances = [client.get("/wallet", headers=user["headers"]).json()["balance"] for user in users]
    assert balances == [1050, 975, 930]

    profile = client.get("/users/me/profile", headers=users[0]["headers"]).json()
    assert profile["contests_won"] == 1
    assert profile["total_winnings"] == 150

    rows = client.get("/leaderboard", params={"timeframe": "all"}).json()
    assert rows[0]["username"] == "alice"
    assert rows[0]["contests_won"] == 1
    assert rows[0]["win_rate"] == 100


def test_auto_status_waits_for_two_participants(client, admin_headers, register, create_contest, create_team):
    contest = create_contest()
    user = register("alice")
    create_team(user["headers"], contest_id=contest["id"])
    start = datetime.fromisoformat(contest["start_time"])

    response = client.post(
        "/admin/contests/auto-status",
        json={"now": (start + timedelta(minutes=5)).isoformat()},
        headers=admin_headers,
    )
    assert response.json() == []
    assert client.get(f"/contests/{contest['id']}").json()["contest"]["status"] == "upcoming"


def test_cancel_refunds_entry_fees(client, admin_headers, register, create_contest, create_team):
    contest = create_contest(entry_fee=100)
    user = register("alice")
    create_team(user["headers"], contest_id=contest["id"])

    response = client.post(
        f"/admin/contests/{contest['id']}/status",
        json={"status": "cancelled", "reason": "Market holiday"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert client.get("/wallet", headers=user["headers"]).json()["balance"] == 1000

    refunds = client.get("/wallet/transactions", params={"type": "refund"}, headers=user["headers"]).json()
    assert refunds["total_count"] == 1
    assert refunds["data"][0]["amount"] == 100

    messages = [row["message"] for row in client.get("/notifications", headers=user["headers"]).json()]
    assert any("Reason: Market holiday" in message for message in messages)


def test_score_refresh_only_for_live_contests(client, admin_headers, create_contest):
    contest = create_contest()
    response = client.post(f"/admin/contests/{contest['id']}/score", headers=admin_headers)
    assert response.status_code == 400
