import os
import sys
from pathlib import Path

# `import spl.*` from the repo root in CI.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def main() -> int:
    if not os.environ.get("DATABASE_URL", "").strip():
        raise RuntimeError("DATABASE_URL is required for CI smoke test")

    from loguru import logger
    from sqlalchemy import func, select

    from spl.db import SessionLocal, engine
    from spl.models import Contest, ContestTag, User, Wallet
    from spl.seed import init_db, seed

    logger.info("CI smoke against {}", engine.url.render_as_string(hide_password=True))
    init_db()

    # A fresh database and a restart must both seed cleanly.
    db = SessionLocal()
    try:
        seed(db)
        seed(db)
        counts = {
            name: int(db.execute(select(func.count()).select_from(model)).scalar_one())
            for name, model in (("users", User), ("wallets", Wallet), ("contest_tags", ContestTag), ("contests", Contest))
        }
    finally:
        db.close()

    if counts["users"] < 1:
        raise RuntimeError("Expected the seeded sandbox admin")
    if counts["wallets"] != counts["users"]:
        raise RuntimeError("Expected one wallet per seeded user")
    if counts["contest_tags"] < 1:
        raise RuntimeError("Expected seeded contest tags")

    logger.info("OK create_all + seed {}", counts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
