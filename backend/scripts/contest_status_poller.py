import argparse
import json
import os
import time
from dataclasses import dataclass
from typing import Any
from urllib import error, parse, request

from loguru import logger


@dataclass
class CycleCounts:
    transitions: int = 0
    started: int = 0
    completed: int = 0
    live_contests: int = 0
    scored_contests: int = 0
    failed_requests: int = 0


def http_json(
    method: str,
    url: str,
    payload: Any | None,
    token: str | None,
    timeout: float,
) -> Any:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = request.Request(url, data=data, headers=headers, method=method)
    with request.urlopen(req, timeout=timeout) as response:
        raw = response.read().decode("utf-8")
    return json.loads(raw) if raw else None


def http_json_with_retry(
    method: str,
    url: str,
    payload: Any | None,
    token: str | None,
    timeout: float,
    max_retries: int,
    retry_backoff: float,
) -> Any:
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return http_json(method=method, url=url, payload=payload, token=token, timeout=timeout)
        except error.HTTPError as exc:
            # 4xx will not improve on retry.
            if exc.code < 500 or attempt >= attempts:
                raise
        except (error.URLError, TimeoutError):
            if attempt >= attempts:
                raise
        time.sleep(max(0.1, retry_backoff * attempt))
    return None


def login(api_base: str, username: str, password: str, timeout: float) -> str:
    payload = http_json(
        "POST",
        f"{api_base.rstrip('/')}/auth/login",
        {"username": username, "password": password},
        token=None,
        timeout=timeout,
    )
    token = (payload or {}).get("access_token")
    if not token:
        raise ValueError("Login response did not include an access token.")
    return str(token)


def fetch_live_contest_ids(api_base: str, timeout: float) -> list[int]:
    query = parse.urlencode({"statuses": "live", "page_size": 100})
    payload = http_json("GET", f"{api_base.rstrip('/')}/contests?{query}", None, token=None, timeout=timeout)
    rows = (payload or {}).get("data")
    if not isinstance(rows, list):
        raise ValueError("Expected /contests response to contain a data list.")
    return [int(row["id"]) for row in rows if isinstance(row, dict) and "id" in row]


def run_cycle(
    *,
    api_base: str,
    token: str,
    timeout: float,
    max_retries: int,
    retry_backoff: float,
    score_live: bool,
) -> CycleCounts:
    counts = CycleCounts()
    outcomes = http_json_with_retry(
        "POST",
        f"{api_base.rstrip('/')}/admin/contests/auto-status",
        {},
        token=token,
        timeout=timeout,
        max_retries=max_retries,
        retry_backoff=retry_backoff,
    )
    for outcome in outcomes or []:
        if not outcome.get("ok"):
            counts.failed_requests += 1
            logger.warning("Contest {} transition failed: {}", outcome.get("contest_id"), outcome.get("error"))
            continue
        counts.transitions += 1
        if outcome.get("to_status") == "live":
            counts.started += 1
        elif outcome.get("to_status") == "completed":
            counts.completed += 1
        logger.info(
            "Contest {} {} -> {}",
            outcome.get("contest_id"),
            outcome.get("from_status"),
            outcome.get("to_status"),
        )

    if not score_live:
        return counts

    live_ids = fetch_live_contest_ids(api_base=api_base, timeout=timeout)
    counts.live_contests = len(live_ids)
    for contest_id in live_ids:
        try:
            http_json_with_retry(
                "POST",
                f"{api_base.rstrip('/')}/admin/contests/{contest_id}/score",
                None,
                token=token,
                timeout=timeout,
                max_retries=max_retries,
                retry_backoff=retry_backoff,
            )
            counts.scored_contests += 1
        except Exception as exc:
            counts.failed_requests += 1
            logger.error("Failed to score contest {}: {}", contest_id, exc)
    return counts


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Advance contest lifecycles on a schedule. Starts contests that reached their start time, "
            "completes contests past their end time, and refreshes live leaderboards."
        )
    )
    parser.add_argument("--api-base", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--token", default=os.environ.get("SPL_ADMIN_TOKEN"), help="Admin bearer token")
    parser.add_argument("--username", default=os.environ.get("SPL_ADMIN_USERNAME"), help="Admin username")
    parser.add_argument("--password", default=os.environ.get("SPL_ADMIN_PASSWORD"), help="Admin password")
    parser.add_argument("--interval-seconds", type=int, default=60, help="Polling interval for continuous mode")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--no-score", action="store_true", help="Skip leaderboard refresh for live contests")
    parser.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds")
    parser.add_argument("--max-retries", type=int, default=3, help="Retry attempts per request")
    parser.add_argument("--retry-backoff", type=float, default=1.5, help="Backoff multiplier in seconds")
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if args.interval_seconds <= 0:
        logger.error("--interval-seconds must be > 0")
        return 1
    if args.max_retries <= 0:
        logger.error("--max-retries must be > 0")
        return 1

    token = args.token
    if not token:
        if not args.username or not args.password:
            logger.error("Provide --token or --username and --password for an admin account")
            return 1
        try:
            token = login(args.api_base, args.username, args.password, timeout=float(args.timeout))
        except Exception as exc:
            logger.error("Login failed: {}", exc)
            return 1

    cycles_with_failures = 0
    cycle_index = 0
    while True:
        cycle_index += 1
        try:
            counts = run_cycle(
                api_base=args.api_base,
                token=token,
                timeout=float(args.timeout),
                max_retries=int(args.max_retries),
                retry_backoff=float(args.retry_backoff),
                score_live=not args.no_score,
            )
            logger.info(
                "cycle={} transitions={} started={} completed={} live={} scored={} failed={}",
                cycle_index,
                counts.transitions,
                counts.started,
                counts.completed,
                counts.live_contests,
                counts.scored_contests,
                counts.failed_requests,
            )
            if counts.failed_requests > 0:
                cycles_with_failures += 1
        except Exception as exc:
            cycles_with_failures += 1
            logger.error("cycle={} failed: {}", cycle_index, exc)

        if args.once:
            break
        time.sleep(args.interval_seconds)

    return 0 if cycles_with_failures == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
