"""Redevelopment project lifecycle.

The project moves ``planning -> tender_open -> proposals_received -> voting
-> voting_closed -> developer_selected -> construction -> completed`` and can
be cancelled from any non-terminal state. Closing a vote never assigns a
developer; selection is always a separate owner action.

Writes that race with the scheduler (open, close, select, status changes) are
conditional UPDATEs filtered on the expected current state, so only one caller
wins and the loser sees zero affected rows.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..constants import (
    EVENT_DEVELOPER_SELECTED,
    EVENT_NEW_QUERY,
    EVENT_PROJECT_UPDATE,
    EVENT_PROPOSAL_REJECTED,
    EVENT_PROPOSAL_SELECTED,
    EVENT_QUERY_RESPONSE,
    EVENT_VOTING_CLOSED,
    LIVE_PROPOSAL_STATUSES,
    MANUAL_STATUS_TARGETS,
    PROJECT_TRANSITIONS,
)
from ..core.errors import (
    InvalidSelectionError,
    InvalidStateTransition,
    PermissionDenied,
    ResourceNotFound,
    ValidationFailed,
    VotingNotOpenError,
)
from ..models.models import (
    DeveloperProposal,
    Notification,
    ProjectDocument,
    ProjectPhase,
    ProjectQuery,
    ProjectUpdate,
    RedevelopmentProject,
    Society,
    User,
    as_utc_naive,
    utcnow,
)
from ..schemas.schemas import (
    ProjectDocumentCreate,
    ProjectQueryCreate,
    ProjectQueryResponse,
    ProjectUpdateCreate,
    RedevelopmentProjectCreate,
)
from . import membership, votes
from . import notification_templates as templates
from .audit import audit_log
from .notifications import NotificationCenter, notification_center, persist_notifications, push_created

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoCloseResult:
    closed: bool
    reason: str
    results: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"closed": self.closed, "reason": self.reason}


# --- Lookups and permissions ---------------------------------------------


def get_project(session: Session, project_id: int) -> RedevelopmentProject:
    project = session.get(RedevelopmentProject, project_id)
    if not project:
        raise ResourceNotFound(f"Redevelopment project {project_id} not found")
    return project


def can_manage_project(project: RedevelopmentProject, user: User) -> bool:
    if user.has_role("ADMIN") or project.owner_user_id == user.id:
        return True
    return bool(project.society and project.society.owner_user_id == user.id)


def ensure_can_manage(project: RedevelopmentProject, user: User) -> None:
    if not can_manage_project(project, user):
        raise PermissionDenied(f"User {user.id} cannot manage project {project.id}")


def can_view_project(session: Session, project: RedevelopmentProject, user: User) -> bool:
    if project.is_public or can_manage_project(project, user):
        return True
    if membership.is_active_member(session, project.society_id, user.id):
        return True
    return (
        session.query(DeveloperProposal.id)
        .filter(DeveloperProposal.project_id == project.id, DeveloperProposal.developer_id == user.id)
        .first()
        is not None
    )


def list_projects(
    session: Session,
    user: User,
    society_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[RedevelopmentProject]:
    query = session.query(RedevelopmentProject)
    if society_id is not None:
        query = query.filter(RedevelopmentProject.society_id == society_id)
    if status:
        query = query.filter(RedevelopmentProject.status == status)
    if not user.has_role("ADMIN"):
        society_ids = membership.user_society_ids(session, user.id)
        visibility = (RedevelopmentProject.is_public.is_(True)) | (RedevelopmentProject.owner_user_id == user.id)
        if society_ids:
            visibility = visibility | RedevelopmentProject.society_id.in_(society_ids)
        query = query.filter(visibility)
    return query.order_by(RedevelopmentProject.created_at.desc(), RedevelopmentProject.id.desc()).all()


def _member_ids(session: Session, project: RedevelopmentProject) -> List[int]:
    return membership.active_member_user_ids(session, project.society_id)


def _society_owner_id(project: RedevelopmentProject) -> int:
    return project.society.owner_user_id if project.society else project.owner_user_id


def _project_event(project: RedevelopmentProject, update_type: str, **extra: Any) -> Dict[str, Any]:
    return {
        "project_id": project.id,
        "society_id": project.society_id,
        "update_type": update_type,
        "status": project.status,
        **extra,
    }


# --- Creation and manual transitions -------------------------------------


def create_project(
    session: Session,
    owner: User,
    payload: RedevelopmentProjectCreate,
    notifier: Optional[NotificationCenter] = None,
) -> RedevelopmentProject:
    society = session.get(Society, payload.society_id)
    if not society:
        raise ResourceNotFound(f"Society {payload.society_id} not found")
    if not membership.can_manage_society(society, owner):
        raise PermissionDenied(f"User {owner.id} cannot create projects for society {society.id}")

    project = RedevelopmentProject(
        title=payload.title,
        description=payload.description,
        society_id=society.id,
        owner_user_id=owner.id,
        expected_amenities=list(payload.expected_amenities),
        start_date=as_utc_naive(payload.start_date),
        expected_completion_date=as_utc_naive(payload.expected_completion_date),
        status="planning",
        progress=0,
        estimated_budget=payload.estimated_budget,
        corpus_amount=payload.corpus_amount,
        rent_amount=payload.rent_amount,
        voting_session=payload.voting_session or settings.default_voting_session,
        minimum_approval_percentage=payload.minimum_approval_percentage or settings.minimum_approval_percentage,
        is_public=payload.is_public,
        allow_member_queries=payload.allow_member_queries,
    )
    for index, phase in enumerate(payload.phases):
        project.phases.append(
            ProjectPhase(
                sequence_order=index,
                name=phase.name,
                description=phase.description,
                start_date=as_utc_naive(phase.start_date),
                end_date=as_utc_naive(phase.end_date),
            )
        )
    session.add(project)
    session.flush()

    notifications = persist_notifications(
        session, _member_ids(session, project), templates.project_created(project), sender_id=owner.id
    )
    session.commit()
    session.refresh(project)
    logger.info("Redevelopment project %s created for society %s", project.id, society.id, extra={"project_id": project.id})
    push_created(notifications, notifier)
    return project


def _status_notifications(
    session: Session,
    project: RedevelopmentProject,
    old_status: str,
    new_status: str,
    sender_id: Optional[int],
) -> List[Notification]:
    members = _member_ids(session, project)
    created = persist_notifications(
        session, members, templates.status_changed(project, old_status, new_status), sender_id=sender_id
    )
    if new_status == "construction":
        created += persist_notifications(session, members, templates.construction_started(project), sender_id=sender_id)
    elif new_status == "completed":
        created += persist_notifications(session, members, templates.project_completed(project), sender_id=sender_id)
    return created


def transition_project_status(
    session: Session,
    project: RedevelopmentProject,
    target_status: str,
    actor: User,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    notifier: Optional[NotificationCenter] = None,
) -> RedevelopmentProject:
    """Move a project along the transition table to a manually reachable status.

    ``voting``, ``voting_closed`` and ``developer_selected`` are only entered
    through ``open_voting``, ``close_voting`` and ``select_developer``.
    """
    current = project.status
    if target_status not in MANUAL_STATUS_TARGETS or target_status not in PROJECT_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(
            f"Cannot move project {project.id} from {current} to {target_status}",
            current_status=current,
            target_status=target_status,
        )

    now = as_utc_naive(now) or utcnow()
    values: Dict[Any, Any] = {RedevelopmentProject.status: target_status, RedevelopmentProject.updated_at: now}
    if target_status == "cancelled" and project.voting_status == "open" and current == "voting":
        values[RedevelopmentProject.voting_status] = "closed"
        values[RedevelopmentProject.voting_closed_at] = now
        values[RedevelopmentProject.voting_close_reason] = "cancelled"
    if target_status == "completed":
        values[RedevelopmentProject.progress] = 100

    updated = (
        session.query(RedevelopmentProject)
        .filter(RedevelopmentProject.id == project.id, RedevelopmentProject.status == current)
        .update(values, synchronize_session=False)
    )
    if not updated:
        session.rollback()
        session.refresh(project)
        raise InvalidStateTransition(
            f"Project {project.id} changed concurrently (now {project.status})",
            current_status=project.status,
            target_status=target_status,
        )
    session.refresh(project)

    audit_log(
        session,
        actor_user_id=actor.id,
        action="redevelopment.transition",
        target_entity_type="redevelopment_project",
        target_entity_id=project.id,
        before={"status": current},
        after={"status": target_status, "notes": notes},
        commit=False,
    )
    notifications = _status_notifications(session, project, current, target_status, actor.id)
    session.commit()
    session.refresh(project)

    logger.info(
        "Project %s moved from %s to %s",
        project.id,
        current,
        target_status,
        extra={"project_id": project.id, "actor_user_id": actor.id},
    )
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_PROJECT_UPDATE,
        _project_event(project, "status_changed", old_status=current, new_status=target_status),
    )
    return project


def cancel_project(
    session: Session,
    project: RedevelopmentProject,
    actor: User,
    notes: Optional[str] = None,
    notifier: Optional[NotificationCenter] = None,
) -> RedevelopmentProject:
    return transition_project_status(session, project, "cancelled", actor, notes=notes, notifier=notifier)


# --- Voting ---------------------------------------------------------------


def open_voting(
    session: Session,
    project: RedevelopmentProject,
    deadline: datetime,
    actor: User,
    now: Optional[datetime] = None,
    notifier: Optional[NotificationCenter] = None,
) -> RedevelopmentProject:
    now = as_utc_naive(now) or utcnow()
    deadline = as_utc_naive(deadline)
    if project.status != "proposals_received":
        raise InvalidStateTransition(
            f"Voting can only be opened from proposals_received (project {project.id} is {project.status})",
            current_status=project.status,
            target_status="voting",
        )
    if deadline is None or deadline <= now:
        raise ValidationFailed("Voting deadline must be in the future")

    updated = (
        session.query(RedevelopmentProject)
        .filter(RedevelopmentProject.id == project.id, RedevelopmentProject.status == "proposals_received")
        .update(
            {
                RedevelopmentProject.status: "voting",
                RedevelopmentProject.voting_status: "open",
                RedevelopmentProject.voting_deadline: deadline,
                RedevelopmentProject.voting_opened_at: now,
                RedevelopmentProject.voting_closed_at: None,
                RedevelopmentProject.voting_close_reason: None,
                RedevelopmentProject.voting_results: None,
                RedevelopmentProject.last_voting_reminder_at: None,
                RedevelopmentProject.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        session.rollback()
        session.refresh(project)
        raise InvalidStateTransition(
            f"Project {project.id} changed concurrently (now {project.status})",
            current_status=project.status,
            target_status="voting",
        )
    session.refresh(project)

    audit_log(
        session,
        actor_user_id=actor.id,
        action="redevelopment.voting.open",
        target_entity_type="redevelopment_project",
        target_entity_id=project.id,
        before={"status": "proposals_received"},
        after={"status": "voting", "voting_deadline": deadline.isoformat()},
        commit=False,
    )
    notifications = persist_notifications(
        session, _member_ids(session, project), templates.voting_opened(project, deadline), sender_id=actor.id
    )
    session.commit()
    session.refresh(project)

    logger.info("Voting opened for project %s until %s", project.id, deadline.isoformat(), extra={"project_id": project.id})
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_PROJECT_UPDATE,
        _project_event(project, "voting_opened", voting_deadline=deadline.isoformat()),
    )
    return project


def majority_threshold(active_members: int) -> int:
    return math.ceil(active_members / 2)


def check_and_auto_close(
    session: Session,
    project: RedevelopmentProject,
    now: Optional[datetime] = None,
    notifier: Optional[NotificationCenter] = None,
) -> AutoCloseResult:
    """Close voting when the deadline has passed OR the votes cast reach half the active members."""
    if project.voting_status != "open" or project.status != "voting":
        return AutoCloseResult(closed=False, reason="voting_not_open")

    now = as_utc_naive(now) or utcnow()
    if project.voting_deadline is not None and now > project.voting_deadline:
        results = close_voting(session, project, "deadline_passed", now=now, notifier=notifier)
        return AutoCloseResult(closed=True, reason=results["reason"], results=results)

    active_members = membership.count_active_members(session, project.society_id)
    votes_cast = votes.get_tally(session, project.id, project.voting_session).total
    if votes_cast >= majority_threshold(active_members):
        results = close_voting(session, project, "majority_reached", now=now, notifier=notifier)
        return AutoCloseResult(closed=True, reason=results["reason"], results=results)

    return AutoCloseResult(closed=False, reason="conditions_not_met")


def proposal_rank_key(result: Dict[str, Any]):
    """Winner ordering: highest approval, then earliest submission, then lowest id."""
    return (-result["approval_percentage"], result["submitted_at"], result["proposal_id"])


def pick_winning_proposal(proposal_results: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    candidates = [
        result
        for result in proposal_results
        if result["total_votes"] > 0 and result["status"] in LIVE_PROPOSAL_STATUSES
    ]
    if not candidates:
        return None
    return min(candidates, key=proposal_rank_key)


def compute_voting_results(
    session: Session,
    project: RedevelopmentProject,
    reason: str,
    now: datetime,
) -> Dict[str, Any]:
    tally = votes.get_tally(session, project.id, project.voting_session)
    approval = tally.approval_percentage
    proposal_results = votes.tally_proposals(session, project)
    return {
        "reason": reason,
        "closed_at": now.isoformat(),
        "voting_session": project.voting_session,
        "final_results": {
            "total_votes": tally.total,
            "yes_votes": tally.yes,
            "no_votes": tally.no,
            "abstain_votes": tally.abstain,
            "approval_percentage": approval,
            "minimum_approval_percentage": project.minimum_approval_percentage,
            "is_approved": approval >= project.minimum_approval_percentage,
        },
        "proposal_results": proposal_results,
        "winning_proposal": pick_winning_proposal(proposal_results),
    }


def _stored_results(project: RedevelopmentProject) -> Dict[str, Any]:
    return {**(project.voting_results or {}), "already_closed": True}


def close_voting(
    session: Session,
    project: RedevelopmentProject,
    reason: str = "manual",
    now: Optional[datetime] = None,
    actor: Optional[User] = None,
    notifier: Optional[NotificationCenter] = None,
) -> Dict[str, Any]:
    """Close the voting round and persist its results exactly once.

    Repeat calls, and the loser of a concurrent close, get the stored results
    with ``already_closed=True`` and emit nothing.
    """
    if project.voting_status == "closed" and project.voting_results is not None:
        return _stored_results(project)
    if project.status != "voting" or project.voting_status != "open":
        raise VotingNotOpenError(
            f"Voting is not open for project {project.id}",
            current_status=project.status,
            target_status="voting_closed",
        )

    now = as_utc_naive(now) or utcnow()
    results = compute_voting_results(session, project, reason, now)

    updated = (
        session.query(RedevelopmentProject)
        .filter(
            RedevelopmentProject.id == project.id,
            RedevelopmentProject.voting_status == "open",
            RedevelopmentProject.status == "voting",
        )
        .update(
            {
                RedevelopmentProject.status: "voting_closed",
                RedevelopmentProject.voting_status: "closed",
                RedevelopmentProject.voting_closed_at: now,
                RedevelopmentProject.voting_close_reason: reason,
                RedevelopmentProject.voting_results: results,
                RedevelopmentProject.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        session.rollback()
        session.refresh(project)
        if project.voting_status == "closed" and project.voting_results is not None:
            logger.info("Voting for project %s already closed by another caller", project.id, extra={"project_id": project.id})
            return _stored_results(project)
        raise VotingNotOpenError(
            f"Voting is not open for project {project.id}",
            current_status=project.status,
            target_status="voting_closed",
        )
    session.refresh(project)

    audit_log(
        session,
        actor_user_id=actor.id if actor else None,
        action="redevelopment.voting.close",
        target_entity_type="redevelopment_project",
        target_entity_id=project.id,
        before={"status": "voting", "voting_status": "open"},
        after={"status": "voting_closed", "reason": reason, "final_results": results["final_results"]},
        commit=False,
    )
    sender_id = actor.id if actor else None
    members = _member_ids(session, project)
    notifications = persist_notifications(session, members, templates.voting_closed(project), sender_id=sender_id)
    notifications += persist_notifications(
        session, members, templates.voting_results_published(project, results), sender_id=sender_id
    )
    notifications += persist_notifications(
        session,
        [_society_owner_id(project)],
        templates.voting_closed_manual_selection(project, results),
        sender_id=sender_id,
    )
    session.commit()
    session.refresh(project)

    logger.info(
        "Voting closed for project %s (%s): %s%% approval over %s votes",
        project.id,
        reason,
        results["final_results"]["approval_percentage"],
        results["final_results"]["total_votes"],
        extra={"project_id": project.id, "close_reason": reason},
    )
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_VOTING_CLOSED,
        {
            "project_id": project.id,
            "reason": reason,
            "final_results": results["final_results"],
            "winning_proposal": results["winning_proposal"],
        },
    )
    return {**results, "already_closed": False}


def select_developer(
    session: Session,
    project: RedevelopmentProject,
    developer_id: int,
    proposal_id: int,
    selected_by: User,
    now: Optional[datetime] = None,
    notifier: Optional[NotificationCenter] = None,
) -> RedevelopmentProject:
    """Assign the developer whose proposal the owner picked after voting closed."""
    if project.status != "voting_closed":
        raise InvalidStateTransition(
            f"Developer can only be selected after voting closes (project {project.id} is {project.status})",
            current_status=project.status,
            target_status="developer_selected",
        )
    proposal = (
        session.query(DeveloperProposal)
        .filter(
            DeveloperProposal.id == proposal_id,
            DeveloperProposal.project_id == project.id,
            DeveloperProposal.developer_id == developer_id,
        )
        .first()
    )
    if proposal is None or proposal.status not in LIVE_PROPOSAL_STATUSES:
        raise InvalidSelectionError(
            f"No live proposal {proposal_id} by developer {developer_id} exists for project {project.id}"
        )

    now = as_utc_naive(now) or utcnow()
    updated = (
        session.query(RedevelopmentProject)
        .filter(RedevelopmentProject.id == project.id, RedevelopmentProject.status == "voting_closed")
        .update(
            {
                RedevelopmentProject.status: "developer_selected",
                RedevelopmentProject.selected_developer_id: developer_id,
                RedevelopmentProject.selected_proposal_id: proposal.id,
                RedevelopmentProject.developer_selected_at: now,
                RedevelopmentProject.developer_selected_by_user_id: selected_by.id,
                RedevelopmentProject.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        session.rollback()
        session.refresh(project)
        raise InvalidStateTransition(
            f"Project {project.id} changed concurrently (now {project.status})",
            current_status=project.status,
            target_status="developer_selected",
        )
    session.refresh(project)

    proposal.status = "selected"
    rejected: List[DeveloperProposal] = []
    for other in project.proposals:
        if other.id == proposal.id or other.status not in LIVE_PROPOSAL_STATUSES:
            continue
        other.status = "rejected"
        other.rejected_at = now
        other.rejection_reason = "Another developer's proposal was selected"
        rejected.append(other)

    audit_log(
        session,
        actor_user_id=selected_by.id,
        action="redevelopment.developer.select",
        target_entity_type="redevelopment_project",
        target_entity_id=project.id,
        before={"status": "voting_closed"},
        after={"status": "developer_selected", "developer_id": developer_id, "proposal_id": proposal.id},
        commit=False,
    )
    notifications = persist_notifications(
        session, [developer_id], templates.proposal_selected(proposal, project), sender_id=selected_by.id
    )
    for other in rejected:
        notifications += persist_notifications(
            session, [other.developer_id], templates.proposal_rejected(other, project), sender_id=selected_by.id
        )
    notifications += persist_notifications(
        session,
        _member_ids(session, project),
        templates.status_changed(project, "voting_closed", "developer_selected"),
        sender_id=selected_by.id,
    )
    session.commit()
    session.refresh(project)

    logger.info(
        "Developer %s selected for project %s via proposal %s",
        developer_id,
        project.id,
        proposal.id,
        extra={"project_id": project.id, "actor_user_id": selected_by.id},
    )
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_society(
        project.society_id,
        EVENT_DEVELOPER_SELECTED,
        {
            "project_id": project.id,
            "developer_id": developer_id,
            "proposal_id": proposal.id,
            "message": f'A developer has been selected for "{project.title}"',
        },
    )
    notifier.notify_user(
        developer_id,
        EVENT_PROPOSAL_SELECTED,
        {"project_id": project.id, "proposal_id": proposal.id, "message": "Your proposal has been selected"},
    )
    for other in rejected:
        notifier.notify_user(
            other.developer_id,
            EVENT_PROPOSAL_REJECTED,
            {"project_id": project.id, "proposal_id": other.id, "message": "Another proposal was selected"},
        )
    return project


# --- Embedded collections --------------------------------------------------


def post_update(
    session: Session,
    project: RedevelopmentProject,
    author: User,
    payload: ProjectUpdateCreate,
    notifier: Optional[NotificationCenter] = None,
) -> ProjectUpdate:
    ensure_can_manage(project, author)
    update = ProjectUpdate(
        project_id=project.id,
        title=payload.title,
        description=payload.description,
        posted_by_user_id=author.id,
        is_important=payload.is_important,
    )
    session.add(update)
    session.flush()
    notifications = persist_notifications(
        session,
        _member_ids(session, project),
        templates.update_posted(project, payload.title, payload.is_important),
        sender_id=author.id,
    )
    session.commit()
    session.refresh(update)
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_PROJECT_UPDATE,
        _project_event(project, "update_posted", update={"id": update.id, "title": update.title}),
    )
    return update


def raise_query(
    session: Session,
    project: RedevelopmentProject,
    raiser: User,
    payload: ProjectQueryCreate,
    notifier: Optional[NotificationCenter] = None,
) -> ProjectQuery:
    if not project.allow_member_queries:
        raise InvalidStateTransition(f"Project {project.id} does not accept member queries")
    if not (membership.is_active_member(session, project.society_id, raiser.id) or can_manage_project(project, raiser)):
        raise PermissionDenied(f"User {raiser.id} is not a member of society {project.society_id}")
    query = ProjectQuery(
        project_id=project.id,
        title=payload.title,
        description=payload.description,
        raised_by_user_id=raiser.id,
        status="open",
    )
    session.add(query)
    session.flush()
    notifications = persist_notifications(
        session,
        [_society_owner_id(project), project.owner_user_id],
        templates.query_raised(project, payload.title),
        sender_id=raiser.id,
    )
    session.commit()
    session.refresh(query)
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_NEW_QUERY,
        {"project_id": project.id, "query": {"id": query.id, "title": query.title, "raised_by": raiser.id}},
    )
    return query


def respond_to_query(
    session: Session,
    project: RedevelopmentProject,
    query_id: int,
    responder: User,
    payload: ProjectQueryResponse,
    notifier: Optional[NotificationCenter] = None,
) -> ProjectQuery:
    ensure_can_manage(project, responder)
    query = session.get(ProjectQuery, query_id)
    if not query or query.project_id != project.id:
        raise ResourceNotFound(f"Query {query_id} not found on project {project.id}")
    query.response = payload.response
    query.status = payload.status
    query.responded_by_user_id = responder.id
    query.responded_at = utcnow()
    notifications = persist_notifications(
        session,
        [query.raised_by_user_id],
        templates.query_responded(project, query.title),
        sender_id=responder.id,
    )
    session.commit()
    session.refresh(query)
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    event = {"project_id": project.id, "query": {"id": query.id, "title": query.title, "status": query.status}}
    notifier.notify_user(query.raised_by_user_id, EVENT_QUERY_RESPONSE, event)
    notifier.notify_project(project.id, EVENT_QUERY_RESPONSE, event)
    return query


def add_document(
    session: Session,
    project: RedevelopmentProject,
    uploader: User,
    payload: ProjectDocumentCreate,
    notifier: Optional[NotificationCenter] = None,
) -> ProjectDocument:
    ensure_can_manage(project, uploader)
    document = ProjectDocument(
        project_id=project.id,
        name=payload.name,
        document_type=payload.document_type,
        url=payload.url,
        uploaded_by_user_id=uploader.id,
        is_public=payload.is_public,
    )
    session.add(document)
    session.flush()
    members = _member_ids(session, project)
    notifications = persist_notifications(
        session,
        members,
        templates.document_uploaded(project, payload.name, payload.document_type),
        sender_id=uploader.id,
    )
    if payload.document_type == "agreement" and project.status == "developer_selected":
        recipients = members + [project.selected_developer_id]
        notifications += persist_notifications(
            session, recipients, templates.agreement_signed(project), sender_id=uploader.id
        )
    session.commit()
    session.refresh(document)
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_PROJECT_UPDATE,
        _project_event(project, "document_uploaded", document={"id": document.id, "name": document.name}),
    )
    return document


def update_phase_status(
    session: Session,
    project: RedevelopmentProject,
    phase_id: int,
    status: str,
    actor: User,
    notifier: Optional[NotificationCenter] = None,
) -> ProjectPhase:
    ensure_can_manage(project, actor)
    phase = session.get(ProjectPhase, phase_id)
    if not phase or phase.project_id != project.id:
        raise ResourceNotFound(f"Phase {phase_id} not found on project {project.id}")
    was_completed = phase.status == "completed"
    phase.status = status
    phase.completed_at = utcnow() if status == "completed" else None

    notifications: List[Notification] = []
    if status == "completed" and not was_completed:
        if project.status == "construction":
            template = templates.construction_milestone(project, phase.name)
        else:
            template = templates.milestone_completed(project, phase.name)
        notifications = persist_notifications(session, _member_ids(session, project), template, sender_id=actor.id)

    session.flush()
    phases = project.phases
    if phases:
        completed = sum(1 for item in phases if item.status == "completed")
        project.progress = votes.rounded_percentage(completed, len(phases))
    session.commit()
    session.refresh(phase)
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_PROJECT_UPDATE,
        _project_event(project, "phase_updated", phase={"id": phase.id, "status": phase.status}, progress=project.progress),
    )
    return phase


def update_progress(session: Session, project: RedevelopmentProject, progress: int, actor: User) -> RedevelopmentProject:
    ensure_can_manage(project, actor)
    if not 0 <= progress <= 100:
        raise ValidationFailed("Progress must be between 0 and 100")
    project.progress = progress
    session.commit()
    session.refresh(project)
    return project
