from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from .. import config
from ..auth.jwt import require_roles
from ..services.voting_scheduler import VotingScheduler

router = APIRouter()

require_admin = require_roles("ADMIN")


def get_voting_scheduler(request: Request) -> VotingScheduler:
    scheduler = getattr(request.app.state, "voting_scheduler", None)
    if scheduler is None:
        scheduler = VotingScheduler.from_settings(config.SessionLocal)
    return scheduler


@router.get("/health")
def health(request: Request) -> Dict[str, Any]:
    scheduler = getattr(request.app.state, "voting_scheduler", None)
    return {
        "status": "ok",
        "scheduler_running": bool(scheduler and scheduler.running),
    }


@router.post("/voting-checks", dependencies=[Depends(require_admin)])
def run_voting_checks(scheduler: VotingScheduler = Depends(get_voting_scheduler)) -> Dict[str, Any]:
    """Run the deadline, threshold, reminder and purge sweeps immediately."""
    return scheduler.run_all()
