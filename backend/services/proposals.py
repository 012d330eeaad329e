from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..constants import EVENT_NEW_PROPOSAL, LIVE_PROPOSAL_STATUSES
from ..core.errors import InvalidStateTransition, ResourceNotFound
from ..models.models import DeveloperProposal, RedevelopmentProject, User, as_utc_naive, utcnow
from ..schemas.schemas import DeveloperProposalCreate, ProposalEvaluation
from . import notification_templates as templates
from .audit import audit_log
from .notifications import NotificationCenter, notification_center, persist_notifications, push_created

logger = logging.getLogger(__name__)

# Project statuses in which developers may still submit.
SUBMISSION_STATUSES = ("tender_open", "proposals_received")

COST_FIELDS = ("construction_cost", "amenities_cost", "legal_cost", "contingency_cost")


def get_proposal(session: Session, proposal_id: int) -> DeveloperProposal:
    proposal = session.get(DeveloperProposal, proposal_id)
    if not proposal:
        raise ResourceNotFound(f"Proposal {proposal_id} not found")
    return proposal


def list_proposals(session: Session, project_id: int, include_withdrawn: bool = True) -> List[DeveloperProposal]:
    query = session.query(DeveloperProposal).filter(DeveloperProposal.project_id == project_id)
    if not include_withdrawn:
        query = query.filter(DeveloperProposal.status.notin_(("withdrawn", "draft")))
    return query.order_by(DeveloperProposal.submitted_at.asc(), DeveloperProposal.id.asc()).all()


def proposal_summaries(session: Session, project_id: int) -> List[dict]:
    return [
        {"id": proposal.id, "developer_id": proposal.developer_id, "title": proposal.title}
        for proposal in list_proposals(session, project_id, include_withdrawn=False)
    ]


def _total_cost(payload: DeveloperProposalCreate) -> Optional[Decimal]:
    parts = [getattr(payload, field) for field in COST_FIELDS if getattr(payload, field) is not None]
    return sum(parts, Decimal("0")) if parts else None


def submit_proposal(
    session: Session,
    project: RedevelopmentProject,
    developer: User,
    payload: DeveloperProposalCreate,
    notifier: Optional[NotificationCenter] = None,
) -> DeveloperProposal:
    """Create a developer's proposal for ``project``.

    The first proposal on a ``tender_open`` project moves it to
    ``proposals_received``.
    """
    if project.status not in SUBMISSION_STATUSES:
        raise InvalidStateTransition(
            f"Project {project.id} is not accepting proposals",
            current_status=project.status,
            target_status="proposals_received",
        )
    existing = (
        session.query(DeveloperProposal)
        .filter(DeveloperProposal.project_id == project.id, DeveloperProposal.developer_id == developer.id)
        .first()
    )
    if existing:
        raise InvalidStateTransition(
            f"Developer {developer.id} already submitted proposal {existing.id} for project {project.id}",
            current_status=existing.status,
            target_status="submitted",
        )

    now = utcnow()
    moved = (
        session.query(RedevelopmentProject)
        .filter(RedevelopmentProject.id == project.id, RedevelopmentProject.status == "tender_open")
        .update(
            {RedevelopmentProject.status: "proposals_received", RedevelopmentProject.updated_at: now},
            synchronize_session=False,
        )
    )
    if not moved:
        still_open = (
            session.query(RedevelopmentProject)
            .filter(RedevelopmentProject.id == project.id, RedevelopmentProject.status == "proposals_received")
            .update({RedevelopmentProject.updated_at: now}, synchronize_session=False)
        )
        if not still_open:
            session.rollback()
            session.refresh(project)
            raise InvalidStateTransition(
                f"Project {project.id} stopped accepting proposals (now {project.status})",
                current_status=project.status,
                target_status="proposals_received",
            )
    session.refresh(project)

    proposal = DeveloperProposal(
        project_id=project.id,
        developer_id=developer.id,
        title=payload.title,
        description=payload.description,
        corpus_amount=payload.corpus_amount,
        rent_amount=payload.rent_amount,
        fsi=payload.fsi,
        proposed_amenities=[item.model_dump(mode="json") for item in payload.proposed_amenities],
        timeline_summary=payload.timeline_summary,
        proposed_start_date=as_utc_naive(payload.proposed_start_date),
        proposed_completion_date=as_utc_naive(payload.proposed_completion_date),
        proposed_phases=[item.model_dump(mode="json") for item in payload.proposed_phases],
        construction_cost=payload.construction_cost,
        amenities_cost=payload.amenities_cost,
        legal_cost=payload.legal_cost,
        contingency_cost=payload.contingency_cost,
        total_cost=_total_cost(payload),
        payment_schedule=[item.model_dump(mode="json") for item in payload.payment_schedule],
        developer_info=payload.developer_info.model_dump(mode="json"),
        status="submitted",
        submitted_at=now,
    )
    session.add(proposal)

    if moved:
        audit_log(
            session,
            actor_user_id=developer.id,
            action="redevelopment.transition",
            target_entity_type="redevelopment_project",
            target_entity_id=project.id,
            before={"status": "tender_open"},
            after={"status": project.status},
            commit=False,
        )
    session.flush()

    owner_id = project.society.owner_user_id if project.society else project.owner_user_id
    notifications = persist_notifications(
        session,
        [owner_id, project.owner_user_id],
        templates.proposal_submitted(proposal, project),
        sender_id=developer.id,
    )
    session.commit()
    session.refresh(proposal)

    logger.info(
        "Proposal %s submitted by developer %s for project %s",
        proposal.id,
        developer.id,
        project.id,
        extra={"project_id": project.id},
    )
    notifier = notifier or notification_center
    push_created(notifications, notifier)
    notifier.notify_project(
        project.id,
        EVENT_NEW_PROPOSAL,
        {
            "project_id": project.id,
            "proposal": {"id": proposal.id, "developer_id": developer.id, "title": proposal.title},
            "message": f'New proposal "{proposal.title}" submitted',
        },
    )
    return proposal


def evaluate_proposal(
    session: Session,
    proposal: DeveloperProposal,
    evaluator: User,
    evaluation: ProposalEvaluation,
) -> DeveloperProposal:
    """Record an administrative score. Independent of member voting."""
    if proposal.status not in LIVE_PROPOSAL_STATUSES:
        raise InvalidStateTransition(
            f"Proposal {proposal.id} is {proposal.status} and cannot be evaluated",
            current_status=proposal.status,
            target_status="under_review",
        )
    scores = (evaluation.technical_score, evaluation.financial_score, evaluation.timeline_score)
    proposal.technical_score = evaluation.technical_score
    proposal.financial_score = evaluation.financial_score
    proposal.timeline_score = evaluation.timeline_score
    # Mean of three scores, rounded half up.
    proposal.overall_score = (2 * sum(scores) + 3) // 6
    proposal.evaluated_by_user_id = evaluator.id
    proposal.evaluated_at = utcnow()
    proposal.evaluation_comments = evaluation.comments
    if proposal.status == "submitted":
        proposal.status = "under_review"
    session.commit()
    session.refresh(proposal)
    return proposal


def shortlist_proposal(
    session: Session,
    proposal: DeveloperProposal,
    actor: User,
    notifier: Optional[NotificationCenter] = None,
) -> DeveloperProposal:
    if proposal.status not in ("submitted", "under_review"):
        raise InvalidStateTransition(
            f"Proposal {proposal.id} is {proposal.status} and cannot be shortlisted",
            current_status=proposal.status,
            target_status="shortlisted",
        )
    proposal.status = "shortlisted"
    notifications = persist_notifications(
        session,
        [proposal.developer_id],
        templates.proposal_shortlisted(proposal, proposal.project),
        sender_id=actor.id,
    )
    session.commit()
    session.refresh(proposal)
    push_created(notifications, notifier)
    return proposal


def withdraw_proposal(session: Session, proposal: DeveloperProposal, developer: User) -> DeveloperProposal:
    if proposal.developer_id != developer.id:
        raise ResourceNotFound(f"Proposal {proposal.id} not found")
    if proposal.status not in LIVE_PROPOSAL_STATUSES:
        raise InvalidStateTransition(
            f"Proposal {proposal.id} is {proposal.status} and cannot be withdrawn",
            current_status=proposal.status,
            target_status="withdrawn",
        )
    if proposal.project.status not in ("tender_open", "proposals_received", "voting"):
        raise InvalidStateTransition(
            f"Project {proposal.project_id} no longer allows withdrawals",
            current_status=proposal.project.status,
            target_status="withdrawn",
        )
    proposal.status = "withdrawn"
    session.commit()
    session.refresh(proposal)
    logger.info("Proposal %s withdrawn", proposal.id, extra={"project_id": proposal.project_id})
    return proposal
