"""
Voting scheduler - periodic auto-close and reminder sweeps.

Runs inside the API process on an APScheduler ``BackgroundScheduler``:
- deadline sweep (default every 5 minutes): open votes whose deadline passed
- threshold sweep (default every 15 minutes): every open vote, for majority participation
- reminder sweep (default hourly): nudges members who have not voted yet
- purge sweep (default hourly): removes expired notifications

Every project is evaluated in its own session with a bounded timeout; a
failure is logged with the project id and the sweep moves on.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import RedevelopmentProject, utcnow
from . import membership, redevelopment, votes
from . import notification_templates as templates
from .notifications import NotificationCenter, notification_center, persist_notifications, purge_expired, push_created

logger = logging.getLogger(__name__)

REMINDER_COOLDOWN = timedelta(hours=24)


class VotingScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional[NotificationCenter] = None,
        deadline_interval_minutes: int = 5,
        threshold_interval_minutes: int = 15,
        reminder_interval_minutes: int = 60,
        purge_interval_minutes: int = 60,
        item_timeout_seconds: Optional[float] = 30.0,
        reminder_window_hours: int = 48,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.notifier = notifier or notification_center
        self.deadline_interval_minutes = deadline_interval_minutes
        self.threshold_interval_minutes = threshold_interval_minutes
        self.reminder_interval_minutes = reminder_interval_minutes
        self.purge_interval_minutes = purge_interval_minutes
        self.item_timeout_seconds = item_timeout_seconds
        self.reminder_window = timedelta(hours=reminder_window_hours)
        self.scheduler = BackgroundScheduler(timezone="UTC")

    @classmethod
    def from_settings(cls, session_factory: Callable[[], Session], notifier: Optional[NotificationCenter] = None) -> "VotingScheduler":
        return cls(
            session_factory,
            notifier=notifier,
            deadline_interval_minutes=settings.voting_deadline_check_minutes,
            threshold_interval_minutes=settings.voting_threshold_check_minutes,
            reminder_interval_minutes=settings.voting_reminder_check_minutes,
            purge_interval_minutes=settings.notification_purge_minutes,
            item_timeout_seconds=settings.scheduler_item_timeout_seconds,
            reminder_window_hours=settings.voting_reminder_window_hours,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Register the sweeps and start the background thread."""
        if self.scheduler.running:
            return
        jobs = (
            (self.check_voting_deadlines, self.deadline_interval_minutes, "voting_deadline_check"),
            (self.check_vote_thresholds, self.threshold_interval_minutes, "voting_threshold_check"),
            (self.send_voting_reminders, self.reminder_interval_minutes, "voting_reminders"),
            (self.purge_expired_notifications, self.purge_interval_minutes, "notification_purge"),
        )
        for func, minutes, job_id in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(minutes=minutes),
                id=job_id,
                replace_existing=True,
                max_instances=1,  # Prevent overlapping sweeps
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(
            "Voting scheduler started (deadline=%sm, threshold=%sm, reminders=%sm, purge=%sm)",
            self.deadline_interval_minutes,
            self.threshold_interval_minutes,
            self.reminder_interval_minutes,
            self.purge_interval_minutes,
        )

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Voting scheduler stopped")

    # --- sweeps -----------------------------------------------------------

    def _open_project_ids(self, due_before: Optional[datetime] = None) -> List[int]:
        with self.session_factory() as session:
            query = session.query(RedevelopmentProject.id).filter(
                RedevelopmentProject.voting_status == "open",
                RedevelopmentProject.status == "voting",
            )
            if due_before is not None:
                query = query.filter(
                    RedevelopmentProject.voting_deadline.isnot(None),
                    RedevelopmentProject.voting_deadline <= due_before,
                )
            return [row[0] for row in query.order_by(RedevelopmentProject.id.asc()).all()]

    def _run_item(self, func: Callable[..., bool], project_id: int, now: datetime) -> bool:
        if not self.item_timeout_seconds:
            return func(project_id, now)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"voting-check-{project_id}")
        try:
            future = executor.submit(func, project_id, now)
            return future.result(timeout=self.item_timeout_seconds)
        finally:
            executor.shutdown(wait=False)

    def _sweep(self, name: str, project_ids: List[int], func: Callable[..., bool], now: datetime) -> Dict[str, Any]:
        summary = {"scanned": len(project_ids), "closed": 0, "failed": 0}
        for project_id in project_ids:
            try:
                if self._run_item(func, project_id, now):
                    summary["closed"] += 1
            except FutureTimeout:
                summary["failed"] += 1
                logger.error(
                    "%s sweep timed out on project %s after %ss",
                    name,
                    project_id,
                    self.item_timeout_seconds,
                    extra={"project_id": project_id, "sweep": name},
                )
            except Exception:
                summary["failed"] += 1
                logger.exception(
                    "%s sweep failed on project %s", name, project_id, extra={"project_id": project_id, "sweep": name}
                )
        if project_ids:
            logger.info("%s sweep finished: %s", name, summary, extra={"sweep": name})
        return summary

    def _evaluate(self, project_id: int, now: datetime) -> bool:
        with self.session_factory() as session:
            project = session.get(RedevelopmentProject, project_id)
            if project is None:
                return False
            result = redevelopment.check_and_auto_close(session, project, now=now, notifier=self.notifier)
            return result.closed and not (result.results or {}).get("already_closed", False)

    def check_voting_deadlines(self) -> Dict[str, Any]:
        now = self.clock()
        return self._sweep("deadline", self._open_project_ids(due_before=now), self._evaluate, now)

    def check_vote_thresholds(self) -> Dict[str, Any]:
        now = self.clock()
        return self._sweep("threshold", self._open_project_ids(), self._evaluate, now)

    def _remind(self, project_id: int, now: datetime) -> bool:
        with self.session_factory() as session:
            project = session.get(RedevelopmentProject, project_id)
            if project is None or project.voting_deadline is None:
                return False
            if not (now < project.voting_deadline <= now + self.reminder_window):
                return False
            previous = project.last_voting_reminder_at
            if previous is not None and now - previous < REMINDER_COOLDOWN:
                return False

            claim = session.query(RedevelopmentProject).filter(
                RedevelopmentProject.id == project.id,
                RedevelopmentProject.voting_status == "open",
            )
            if previous is None:
                claim = claim.filter(RedevelopmentProject.last_voting_reminder_at.is_(None))
            else:
                claim = claim.filter(RedevelopmentProject.last_voting_reminder_at == previous)
            if not claim.update({RedevelopmentProject.last_voting_reminder_at: now}, synchronize_session=False):
                session.rollback()
                return False

            already_voted = votes.voter_ids(session, project.id, project.voting_session)
            pending = [
                user_id
                for user_id in membership.active_member_user_ids(session, project.society_id)
                if user_id not in already_voted
            ]
            days_left = max(1, math.ceil((project.voting_deadline - now).total_seconds() / 86400))
            notifications = persist_notifications(
                session, pending, templates.voting_reminder(project, project.voting_deadline, days_left)
            )
            session.commit()
            push_created(notifications, self.notifier)
            logger.info(
                "Sent voting reminders for project %s to %s member(s)",
                project_id,
                len(notifications),
                extra={"project_id": project_id},
            )
            return bool(notifications)

    def send_voting_reminders(self) -> Dict[str, Any]:
        now = self.clock()
        summary = self._sweep("reminder", self._open_project_ids(due_before=now + self.reminder_window), self._remind, now)
        return {"scanned": summary["scanned"], "reminded": summary["closed"], "failed": summary["failed"]}

    def purge_expired_notifications(self) -> Dict[str, Any]:
        now = self.clock()
        try:
            with self.session_factory() as session:
                return {"purged": purge_expired(session, now)}
        except Exception:
            logger.exception("Notification purge failed")
            return {"purged": 0, "failed": 1}

    def run_all(self) -> Dict[str, Any]:
        """Run every sweep once, in order. Used by the admin endpoint and the CLI script."""
        return {
            "deadlines": self.check_voting_deadlines(),
            "thresholds": self.check_vote_thresholds(),
            "reminders": self.send_voting_reminders(),
            "purge": self.purge_expired_notifications(),
        }
