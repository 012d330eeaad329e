"""Builders for the durable notifications emitted by the redevelopment workflow.

Each builder returns a :class:`NotificationTemplate`; ``create_notification``
turns a template into one ``Notification`` row per recipient. The ``metadata``
payload is validated against the tagged union in ``schemas.NotificationMetadata``
so every notification type carries only the fields it declares.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, TypeAdapter

from ..models.models import DeveloperProposal, RedevelopmentProject
from ..schemas.schemas import NotificationMetadata

_metadata_adapter = TypeAdapter(NotificationMetadata)


class NotificationTemplate(BaseModel):
    type: str
    title: str
    message: str
    priority: str = "medium"
    redevelopment_project_id: Optional[int] = None
    proposal_id: Optional[int] = None
    vote_id: Optional[int] = None
    society_id: Optional[int] = None
    metadata: NotificationMetadata
    expires_at: Optional[datetime] = None

    def metadata_json(self) -> Dict[str, Any]:
        return self.metadata.model_dump(mode="json")


def _template(
    project: RedevelopmentProject,
    notification_type: str,
    title: str,
    message: str,
    priority: str,
    metadata: Dict[str, Any],
    proposal: Optional[DeveloperProposal] = None,
    expires_at: Optional[datetime] = None,
) -> NotificationTemplate:
    payload = {"kind": notification_type, "project_title": project.title, **metadata}
    return NotificationTemplate(
        type=notification_type,
        title=title,
        message=message,
        priority=priority,
        redevelopment_project_id=project.id,
        proposal_id=proposal.id if proposal is not None else None,
        society_id=project.society_id,
        metadata=_metadata_adapter.validate_python(payload),
        expires_at=expires_at,
    )


def _amount(value) -> Optional[float]:
    return float(value) if value is not None else None


def _date_label(value: datetime) -> str:
    return value.strftime("%d %b %Y")


def project_created(project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "redevelopment_project_created",
        "New Redevelopment Project Created",
        f'A new redevelopment project "{project.title}" has been created for your society.',
        "high",
        {"status": project.status},
    )


def status_changed(project: RedevelopmentProject, old_status: str, new_status: str) -> NotificationTemplate:
    return _template(
        project,
        "redevelopment_status_changed",
        "Project Status Changed",
        f'Redevelopment project "{project.title}" status changed from {old_status} to {new_status}',
        "high",
        {"old_status": old_status, "new_status": new_status},
    )


def proposal_submitted(proposal: DeveloperProposal, project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "developer_proposal_submitted",
        "New Developer Proposal",
        f'A new proposal "{proposal.title}" has been submitted for project "{project.title}"',
        "high",
        {
            "proposal_title": proposal.title,
            "corpus_amount": _amount(proposal.corpus_amount),
            "rent_amount": _amount(proposal.rent_amount),
        },
        proposal=proposal,
    )


def proposal_shortlisted(proposal: DeveloperProposal, project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "developer_proposal_shortlisted",
        "Proposal Shortlisted",
        f'Your proposal "{proposal.title}" has been shortlisted for project "{project.title}"',
        "high",
        {"proposal_title": proposal.title},
        proposal=proposal,
    )


def proposal_selected(proposal: DeveloperProposal, project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "developer_proposal_selected",
        "Proposal Selected!",
        f'Congratulations! Your proposal "{proposal.title}" has been selected for project "{project.title}"',
        "urgent",
        {"proposal_title": proposal.title},
        proposal=proposal,
    )


def proposal_rejected(proposal: DeveloperProposal, project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "developer_proposal_rejected",
        "Proposal Not Selected",
        f'Your proposal "{proposal.title}" was not selected for project "{project.title}". '
        "Thank you for participating.",
        "medium",
        {"proposal_title": proposal.title},
        proposal=proposal,
    )


def voting_opened(project: RedevelopmentProject, deadline: datetime) -> NotificationTemplate:
    return _template(
        project,
        "voting_opened",
        "Voting Now Open",
        f'Voting is now open for "{project.title}". Please cast your vote before {_date_label(deadline)}',
        "urgent",
        {"deadline": deadline},
        expires_at=deadline,
    )


def voting_reminder(project: RedevelopmentProject, deadline: datetime, days_left: int) -> NotificationTemplate:
    plural = "s" if days_left > 1 else ""
    return _template(
        project,
        "voting_reminder",
        "Voting Deadline Approaching",
        f'Reminder: Only {days_left} day{plural} left to vote on "{project.title}"',
        "high",
        {"deadline": deadline, "days_left": days_left},
        expires_at=deadline,
    )


def voting_closed(project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "voting_closed",
        "Voting Closed",
        f'Voting for "{project.title}" has been closed. Results will be announced soon.',
        "high",
        {"status": project.status},
    )


def voting_closed_manual_selection(project: RedevelopmentProject, results: Dict[str, Any]) -> NotificationTemplate:
    final = results["final_results"]
    winner = results.get("winning_proposal")
    if winner:
        suggestion = f' The leading proposal is "{winner["title"]}" with {winner["approval_percentage"]}% approval.'
    else:
        suggestion = " No proposal received any votes."
    return _template(
        project,
        "voting_closed_manual_selection",
        "Voting Closed: Select a Developer",
        f'Voting for "{project.title}" has closed ({results["reason"]}) with '
        f'{final["approval_percentage"]}% approval.{suggestion} Please review the results and select a developer.',
        "urgent",
        {
            "close_reason": results["reason"],
            "approval_percentage": final["approval_percentage"],
            "is_approved": final["is_approved"],
            "winning_proposal_id": winner["proposal_id"] if winner else None,
            "winning_proposal_title": winner["title"] if winner else None,
        },
    )


def voting_results_published(project: RedevelopmentProject, results: Dict[str, Any]) -> NotificationTemplate:
    final = results["final_results"]
    outcome = "approved" if final["is_approved"] else "rejected"
    return _template(
        project,
        "voting_results_published",
        "Voting Results Announced",
        f'Voting results for "{project.title}" are out. The project has been {outcome} '
        f'with {final["approval_percentage"]}% approval.',
        "urgent",
        {
            "approval_percentage": final["approval_percentage"],
            "is_approved": final["is_approved"],
            "total_votes": final["total_votes"],
        },
    )


def milestone_completed(project: RedevelopmentProject, milestone: str) -> NotificationTemplate:
    return _template(
        project,
        "project_milestone_completed",
        "Milestone Completed",
        f'Milestone "{milestone}" for project "{project.title}" has been completed.',
        "medium",
        {"milestone": milestone},
    )


def document_uploaded(project: RedevelopmentProject, document_name: str, document_type: str) -> NotificationTemplate:
    return _template(
        project,
        "project_document_uploaded",
        "New Document Uploaded",
        f'A new {document_type} document "{document_name}" has been uploaded to project "{project.title}"',
        "medium",
        {"document_name": document_name, "document_type": document_type},
    )


def query_raised(project: RedevelopmentProject, query_title: str) -> NotificationTemplate:
    return _template(
        project,
        "project_query_raised",
        "New Query Raised",
        f'A new query "{query_title}" has been raised for project "{project.title}"',
        "medium",
        {"query_title": query_title},
    )


def query_responded(project: RedevelopmentProject, query_title: str) -> NotificationTemplate:
    return _template(
        project,
        "project_query_responded",
        "Query Response",
        f'Your query "{query_title}" for project "{project.title}" has been responded to',
        "medium",
        {"query_title": query_title},
    )


def update_posted(project: RedevelopmentProject, update_title: str, is_important: bool = False) -> NotificationTemplate:
    lowered = update_title.lower()
    urgent = is_important or "important" in lowered or "urgent" in lowered
    return _template(
        project,
        "project_update_posted",
        "Project Update",
        f'New update posted for "{project.title}": {update_title}',
        "high" if urgent else "medium",
        {"update_title": update_title},
    )


def agreement_signed(project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "agreement_signed",
        "Agreement Signed",
        f'The development agreement for "{project.title}" has been signed successfully.',
        "urgent",
        {},
    )


def construction_started(project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "construction_started",
        "Construction Started",
        f'Construction work has started for project "{project.title}"',
        "urgent",
        {},
    )


def construction_milestone(project: RedevelopmentProject, milestone: str) -> NotificationTemplate:
    return _template(
        project,
        "construction_milestone",
        "Construction Milestone",
        f'Construction milestone "{milestone}" achieved for project "{project.title}"',
        "high",
        {"milestone": milestone},
    )


def project_completed(project: RedevelopmentProject) -> NotificationTemplate:
    return _template(
        project,
        "project_completed",
        "Project Completed!",
        f'Congratulations! The redevelopment project "{project.title}" has been successfully completed.',
        "urgent",
        {},
    )
