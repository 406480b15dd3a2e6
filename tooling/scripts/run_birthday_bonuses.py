#!/usr/bin/env python3
"""Credit the yearly birthday bonus to members whose birthday is today.

Intended usage: schedule daily via cron or a workflow runner.

Example:
    python tooling/scripts/run_birthday_bonuses.py

Use `--date YYYY-MM-DD` to replay a specific day; members already credited
for that year are reported as duplicates and not credited again.
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Award loyalty birthday bonuses")
    parser.add_argument(
        "--date",
        type=dt.date.fromisoformat,
        default=None,
        help="Run for this calendar date instead of today (UTC).",
    )
    return parser.parse_args()


async def _run(run_date: dt.date | None) -> Dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from loyalty_api.core.settings import get_settings  # type: ignore import-position
    from loyalty_api.db.session import build_engine, build_session_factory  # type: ignore import-position
    from loyalty_api.jobs.loyalty import run_birthday_bonuses  # type: ignore import-position
    from loyalty_api.services.loyalty import LoyaltyPolicy  # type: ignore import-position

    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        return await run_birthday_bonuses(
            session_factory=build_session_factory(engine),
            policy=LoyaltyPolicy.from_settings(settings),
            today=run_date,
        )
    finally:
        await engine.dispose()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.date))
    logger.success("Birthday bonus run completed", **summary)
    return 0 if summary["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
