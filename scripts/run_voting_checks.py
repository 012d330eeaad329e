#!/usr/bin/env python3
"""Run the voting deadline, threshold, reminder and purge sweeps once."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.config import SessionLocal, settings  # noqa: E402
from backend.core.logging import configure_logging  # noqa: E402
from backend.services.voting_scheduler import VotingScheduler  # noqa: E402


def main() -> None:
    configure_logging(settings.log_level)
    summary = VotingScheduler.from_settings(SessionLocal).run_all()
    closed = summary["deadlines"]["closed"] + summary["thresholds"]["closed"]
    failed = summary["deadlines"]["failed"] + summary["thresholds"]["failed"] + summary["reminders"]["failed"]
    print(
        f"Voting checks: {closed} vote(s) closed, {summary['reminders']['reminded']} reminder batch(es), "
        f"{summary['purge'].get('purged', 0)} notification(s) purged, {failed} failure(s)."
    )
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
