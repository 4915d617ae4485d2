import os
import time
from datetime import datetime
from decimal import Decimal

from loguru import logger
from sqlalchemy import func, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .auth import hash_password
from .contests import ContestDraft, create_contest
from .db import Base, engine
from .models import Contest, ContestTag, User
from .wallet import WELCOME_BONUS, get_or_create_wallet, grant_bonus

CONTEST_TAG_CATALOG: list[dict[str, str]] = [
    {"name": "Tech", "description": "Technology heavy contests", "color": "#3b82f6"},
    {"name": "Finance", "description": "Banks, payments and insurers", "color": "#10b981"},
    {"name": "Beginner Friendly", "description": "Low stakes, good for first contests", "color": "#f59e0b"},
    {"name": "High Stakes", "description": "Large entry fees and prize pools", "color": "#ef4444"},
    {"name": "Daily", "description": "Single trading session", "color": "#8b5cf6"},
    {"name": "Weekly", "description": "Runs across a trading week", "color": "#ec4899"},
]

SAMPLE_CONTESTS: list[dict[str, object]] = [
    {
        "title": "Daily Market Sprint",
        "description": "One trading session. Pick 11 stocks, lock your roles, and climb the board.",
        "contest_type": "tournament",
        "difficulty": "beginner",
        "entry_fee": Decimal("50"),
        "max_participants": 100,
        "featured": True,
        "tags": ["Daily", "Beginner Friendly"],
        "rules": [
            "Teams must have exactly 11 stocks within the $100M budget.",
            "Roles are locked once the contest goes live.",
            "Points are calculated from each stock's daily change and role multiplier.",
        ],
    },
    {
        "title": "Head-to-Head Tech Duel",
        "description": "Two players, one session. Winner takes the top prize share.",
        "contest_type": "head-to-head",
        "difficulty": "intermediate",
        "entry_fee": Decimal("200"),
        "max_participants": 2,
        "featured": False,
        "tags": ["Tech", "High Stakes"],
        "rules": ["Head-to-head contests start once both seats are filled."],
    },
]

DEFAULT_SANDBOX_USERNAME = (os.environ.get("SANDBOX_USERNAME") or "sandbox-admin").strip().lower() or "sandbox-admin"
SEED_SAMPLE_CONTESTS = os.environ.get("SEED_SAMPLE_CONTESTS", "true").strip().lower() in {"1", "true", "yes"}


def init_db():
    # Wait for the database to accept connections
    for attempt in range(30):  # ~30 seconds
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            time.sleep(1)
    else:
        raise RuntimeError("Database not ready after 30 seconds")

    Base.metadata.create_all(bind=engine)


def seed(db: Session):
    sandbox_username = DEFAULT_SANDBOX_USERNAME
    user = db.execute(select(User).where(User.username == sandbox_username)).scalar_one_or_none()
    sandbox_password_hash = hash_password(os.environ.get("SANDBOX_PASSWORD", "sandbox-password"))
    if not user:
        user = User(
            username=sandbox_username,
            full_name="Sandbox Admin",
            role="admin",
            password_hash=sandbox_password_hash,
        )
        db.add(user)
        db.flush()
        grant_bonus(db, user.id, WELCOME_BONUS)
        logger.info("Seeded sandbox user {}", sandbox_username)
    else:
        if not user.password_hash:
            user.password_hash = sandbox_password_hash
        get_or_create_wallet(db, user.id)

    existing_tags = {tag.name for tag in db.execute(select(ContestTag)).scalars()}
    new_tags = [
        ContestTag(name=row["name"], description=row["description"], color=row["color"])
        for row in CONTEST_TAG_CATALOG
        if row["name"] not in existing_tags
    ]
    if new_tags:
        db.add_all(new_tags)
        db.flush()

    contest_count = int(db.execute(select(func.count()).select_from(Contest)).scalar_one())
    if SEED_SAMPLE_CONTESTS and contest_count == 0:
        now = datetime.utcnow()
        for row in SAMPLE_CONTESTS:
            create_contest(db, ContestDraft(**row), created_by=user.id, now=now)
        logger.info("Seeded {} sample contests", len(SAMPLE_CONTESTS))

    db.commit()
