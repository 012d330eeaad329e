from datetime import timedelta

import pytest

from backend.core.errors import (
    InvalidSelectionError,
    InvalidStateTransition,
    PermissionDenied,
    ValidationFailed,
    VotingNotOpenError,
)
from backend.models.models import AuditLog, DeveloperProposal, Notification, RedevelopmentProject, utcnow
from backend.schemas.schemas import DeveloperProposalCreate, ProjectDocumentCreate, RedevelopmentProjectCreate
from backend.services import proposals as proposal_service
from backend.services import redevelopment as redevelopment_service
from backend.services import votes as vote_service
from backend.services.redevelopment import majority_threshold, pick_winning_proposal


@pytest.fixture
def society_setup(create_user, create_society):
    secretary = create_user(email="secretary@example.com", role_name="SOCIETY_OWNER")
    society = create_society(secretary)
    return secretary, society


def _cast(db_session, project, members, values, proposal_id=None):
    for member, value in zip(members, values):
        vote_service.cast_vote(db_session, project, member, value, proposal_id=proposal_id)


def test_majority_threshold_rounds_up():
    assert majority_threshold(10) == 5
    assert majority_threshold(7) == 4
    assert majority_threshold(1) == 1
    assert majority_threshold(0) == 0


def test_auto_close_on_majority(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 10)
    project = create_project(society, secretary, status="voting")
    _cast(db_session, project, members[:7], ["yes"] * 6 + ["no"])

    result = redevelopment_service.check_and_auto_close(db_session, project, notifier=notifier)

    assert result.closed is True
    assert result.reason == "majority_reached"
    final = result.results["final_results"]
    assert final["total_votes"] == 7
    assert final["approval_percentage"] == 86
    assert final["is_approved"] is True
    db_session.refresh(project)
    assert project.status == "voting_closed"
    assert project.voting_status == "closed"
    assert project.voting_close_reason == "majority_reached"
    assert project.selected_developer_id is None


def test_auto_close_on_deadline_below_majority(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 10)
    project = create_project(society, secretary, status="voting")
    _cast(db_session, project, members[:3], ["yes", "yes", "no"])

    later = project.voting_deadline + timedelta(minutes=1)
    result = redevelopment_service.check_and_auto_close(db_session, project, now=later, notifier=notifier)

    assert result.closed is True
    assert result.reason == "deadline_passed"
    assert result.results["final_results"]["approval_percentage"] == 67


def test_no_close_when_neither_condition_holds(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 10)
    project = create_project(society, secretary, status="voting")
    _cast(db_session, project, members[:4], ["yes"] * 4)

    result = redevelopment_service.check_and_auto_close(db_session, project, notifier=notifier)

    assert result.closed is False
    db_session.refresh(project)
    assert project.status == "voting"
    assert notifier.calls == []


def test_deadline_wins_when_both_conditions_hold(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 2)
    project = create_project(society, secretary, status="voting")
    _cast(db_session, project, members, ["yes", "yes"])

    later = project.voting_deadline + timedelta(hours=1)
    result = redevelopment_service.check_and_auto_close(db_session, project, now=later, notifier=notifier)
    assert result.reason == "deadline_passed"


def test_empty_society_closes_on_majority(db_session, society_setup, create_project, notifier):
    secretary, society = society_setup
    project = create_project(society, secretary, status="voting")

    result = redevelopment_service.check_and_auto_close(db_session, project, notifier=notifier)

    assert result.closed is True
    assert result.reason == "majority_reached"
    assert result.results["final_results"]["total_votes"] == 0


def test_majority_counts_votes_across_proposals(
    db_session, society_setup, create_user, create_members, create_project, create_proposal, notifier
):
    secretary, society = society_setup
    members = create_members(society, 10)
    project = create_project(society, secretary, status="voting")
    developers = [create_user(email=f"dev{index}@builders.example.com", role_name="DEVELOPER") for index in range(3)]
    proposals = [create_proposal(project, developer, title=f"Offer {index}") for index, developer in enumerate(developers)]
    for proposal in proposals:
        _cast(db_session, project, members[:2], ["yes", "yes"], proposal_id=proposal.id)

    assert vote_service.get_tally(db_session, project.id, project.voting_session).total == 6
    result = redevelopment_service.check_and_auto_close(db_session, project, notifier=notifier)

    assert result.closed is True
    assert result.reason == "majority_reached"
    db_session.refresh(project)
    assert project.status == "voting_closed"


def test_votes_below_half_the_members_keep_voting_open(
    db_session, society_setup, create_user, create_members, create_project, create_proposal, notifier
):
    secretary, society = society_setup
    members = create_members(society, 10)
    project = create_project(society, secretary, status="voting")
    developer = create_user(email="solo@builders.example.com", role_name="DEVELOPER")
    proposal = create_proposal(project, developer, title="Solo offer")
    _cast(db_session, project, members[:4], ["yes"] * 4, proposal_id=proposal.id)

    result = redevelopment_service.check_and_auto_close(db_session, project, notifier=notifier)

    assert result.closed is False
    assert result.reason == "conditions_not_met"


def test_close_voting_is_idempotent(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 3)
    project = create_project(society, secretary, status="voting")
    _cast(db_session, project, members[:1], ["yes"])

    first = redevelopment_service.close_voting(db_session, project, "manual", actor=secretary, notifier=notifier)
    notifications_after_first = db_session.query(Notification).count()
    events_after_first = list(notifier.calls)

    second = redevelopment_service.close_voting(db_session, project, "deadline_passed", notifier=notifier)

    assert first["already_closed"] is False
    assert second["already_closed"] is True
    assert second["reason"] == "manual"
    assert second["final_results"] == first["final_results"]
    assert db_session.query(Notification).count() == notifications_after_first
    assert notifier.calls == events_after_first
    assert notifier.events("project").count("voting_closed") == 1


def test_close_voting_notifies_members_and_owner(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 2)
    project = create_project(society, secretary, status="voting")

    redevelopment_service.close_voting(db_session, project, notifier=notifier)

    for member in members:
        types = {n.type for n in db_session.query(Notification).filter(Notification.recipient_id == member.id)}
        assert types == {"voting_closed", "voting_results_published"}
    owner_types = {n.type for n in db_session.query(Notification).filter(Notification.recipient_id == secretary.id)}
    assert owner_types == {"voting_closed_manual_selection"}


def test_close_voting_requires_open_vote(db_session, society_setup, create_project):
    secretary, society = society_setup
    project = create_project(society, secretary, status="proposals_received")

    with pytest.raises(VotingNotOpenError):
        redevelopment_service.close_voting(db_session, project)


def test_winner_is_highest_approval(
    db_session, society_setup, create_user, create_members, create_project, create_proposal, notifier
):
    secretary, society = society_setup
    developer_a = create_user(email="a@builders.example.com", role_name="DEVELOPER")
    developer_b = create_user(email="b@builders.example.com", role_name="DEVELOPER")
    members = create_members(society, 6)
    project = create_project(society, secretary, status="voting")
    p1 = create_proposal(project, developer_a, title="P1")
    p2 = create_proposal(project, developer_b, title="P2")
    _cast(db_session, project, members, ["yes"] * 5 + ["no"], proposal_id=p1.id)
    _cast(db_session, project, members, ["yes"] * 2 + ["no"] * 4, proposal_id=p2.id)

    results = redevelopment_service.close_voting(db_session, project, notifier=notifier)

    by_id = {item["proposal_id"]: item for item in results["proposal_results"]}
    assert by_id[p1.id]["approval_percentage"] == 83
    assert by_id[p2.id]["approval_percentage"] == 33
    assert results["winning_proposal"]["proposal_id"] == p1.id
    assert results["winning_proposal"]["developer_id"] == developer_a.id
    db_session.refresh(project)
    assert project.selected_developer_id is None


def test_tie_break_prefers_earliest_then_lowest_id():
    base = {"total_votes": 4, "status": "submitted", "approval_percentage": 75}
    later = {**base, "proposal_id": 1, "submitted_at": "2026-03-02T10:00:00"}
    earlier = {**base, "proposal_id": 2, "submitted_at": "2026-03-01T10:00:00"}
    same_time = {**base, "proposal_id": 3, "submitted_at": "2026-03-01T10:00:00"}

    assert pick_winning_proposal([later, earlier, same_time])["proposal_id"] == 2


def test_winner_ignores_unvoted_and_dead_proposals():
    unvoted = {"proposal_id": 1, "total_votes": 0, "status": "submitted", "approval_percentage": 0, "submitted_at": "a"}
    withdrawn = {"proposal_id": 2, "total_votes": 3, "status": "withdrawn", "approval_percentage": 100, "submitted_at": "a"}
    assert pick_winning_proposal([unvoted, withdrawn]) is None
    assert pick_winning_proposal([]) is None


def test_select_developer_assigns_and_rejects_others(
    db_session, society_setup, create_user, create_members, create_project, create_proposal, notifier
):
    secretary, society = society_setup
    developer_a = create_user(email="a2@builders.example.com", role_name="DEVELOPER")
    developer_b = create_user(email="b2@builders.example.com", role_name="DEVELOPER")
    create_members(society, 2)
    project = create_project(society, secretary, status="voting_closed", voting_status="closed")
    p1 = create_proposal(project, developer_a, title="P1")
    p2 = create_proposal(project, developer_b, title="P2")

    redevelopment_service.select_developer(db_session, project, developer_a.id, p1.id, secretary, notifier=notifier)

    db_session.refresh(project)
    db_session.refresh(p1)
    db_session.refresh(p2)
    assert project.status == "developer_selected"
    assert project.selected_developer_id == developer_a.id
    assert project.selected_proposal_id == p1.id
    assert project.developer_selected_by_user_id == secretary.id
    assert p1.status == "selected"
    assert p2.status == "rejected"
    assert db_session.query(Notification).filter_by(recipient_id=developer_b.id, type="developer_proposal_rejected").count() == 1
    assert db_session.query(Notification).filter_by(recipient_id=developer_a.id, type="developer_proposal_selected").count() == 1
    assert ("society", society.id, "developer_selected") in [call[:3] for call in notifier.calls]
    assert db_session.query(AuditLog).filter(AuditLog.action == "redevelopment.developer.select").count() == 1


def test_select_developer_rejected_when_already_selected(
    db_session, society_setup, create_user, create_project, create_proposal, notifier
):
    secretary, society = society_setup
    developer_a = create_user(email="a3@builders.example.com", role_name="DEVELOPER")
    developer_b = create_user(email="b3@builders.example.com", role_name="DEVELOPER")
    project = create_project(
        society, secretary, status="developer_selected", voting_status="closed", selected_developer_id=developer_b.id
    )
    p1 = create_proposal(project, developer_a, title="P1")

    with pytest.raises(InvalidStateTransition):
        redevelopment_service.select_developer(db_session, project, developer_a.id, p1.id, secretary, notifier=notifier)

    db_session.refresh(project)
    db_session.refresh(p1)
    assert project.selected_developer_id == developer_b.id
    assert p1.status == "submitted"
    assert db_session.query(Notification).count() == 0


def test_select_developer_rejects_mismatched_proposal(
    db_session, society_setup, create_user, create_project, create_proposal, notifier
):
    secretary, society = society_setup
    developer_a = create_user(email="a4@builders.example.com", role_name="DEVELOPER")
    developer_b = create_user(email="b4@builders.example.com", role_name="DEVELOPER")
    project = create_project(society, secretary, status="voting_closed", voting_status="closed")
    create_proposal(project, developer_a, title="P1")
    p2 = create_proposal(project, developer_b, title="P2")

    with pytest.raises(InvalidSelectionError):
        redevelopment_service.select_developer(db_session, project, developer_a.id, p2.id, secretary, notifier=notifier)

    db_session.refresh(project)
    assert project.status == "voting_closed"
    assert project.selected_developer_id is None


def test_open_voting_requires_future_deadline_and_proposals(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    members = create_members(society, 2)
    planning = create_project(society, secretary, status="planning")
    ready = create_project(society, secretary, status="proposals_received")
    now = utcnow()

    with pytest.raises(InvalidStateTransition):
        redevelopment_service.open_voting(db_session, planning, now + timedelta(days=3), secretary, notifier=notifier)
    with pytest.raises(ValidationFailed):
        redevelopment_service.open_voting(db_session, ready, now - timedelta(hours=1), secretary, now=now, notifier=notifier)

    opened = redevelopment_service.open_voting(db_session, ready, now + timedelta(days=3), secretary, now=now, notifier=notifier)
    assert opened.status == "voting"
    assert opened.voting_status == "open"
    for member in members:
        assert db_session.query(Notification).filter_by(recipient_id=member.id, type="voting_opened").count() == 1


def test_manual_transitions_follow_table(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    create_members(society, 1)
    project = create_project(society, secretary, status="planning")

    with pytest.raises(InvalidStateTransition):
        redevelopment_service.transition_project_status(db_session, project, "voting", secretary, notifier=notifier)
    with pytest.raises(InvalidStateTransition):
        redevelopment_service.transition_project_status(db_session, project, "construction", secretary, notifier=notifier)

    redevelopment_service.transition_project_status(db_session, project, "tender_open", secretary, notifier=notifier)
    assert project.status == "tender_open"

    redevelopment_service.cancel_project(db_session, project, secretary, notifier=notifier)
    assert project.status == "cancelled"
    with pytest.raises(InvalidStateTransition):
        redevelopment_service.transition_project_status(db_session, project, "tender_open", secretary, notifier=notifier)


def test_cancel_during_voting_closes_the_vote(db_session, society_setup, create_project, notifier):
    secretary, society = society_setup
    project = create_project(society, secretary, status="voting")

    redevelopment_service.cancel_project(db_session, project, secretary, notifier=notifier)

    assert project.status == "cancelled"
    assert project.voting_status == "closed"
    assert project.voting_close_reason == "cancelled"


def test_completing_construction_sets_progress(db_session, society_setup, create_members, create_project, notifier):
    secretary, society = society_setup
    member = create_members(society, 1)[0]
    project = create_project(society, secretary, status="construction")

    redevelopment_service.transition_project_status(db_session, project, "completed", secretary, notifier=notifier)

    assert project.progress == 100
    types = {n.type for n in db_session.query(Notification).filter_by(recipient_id=member.id)}
    assert types == {"redevelopment_status_changed", "project_completed"}


def test_create_project_requires_society_owner(db_session, society_setup, create_user, create_members, notifier):
    secretary, society = society_setup
    members = create_members(society, 2)
    outsider = create_user(email="outsider@example.com", role_name="SOCIETY_OWNER")
    payload = RedevelopmentProjectCreate(
        title="Wing C", description="Redevelop wing C", society_id=society.id, phases=[{"name": "Demolition"}]
    )

    with pytest.raises(PermissionDenied):
        redevelopment_service.create_project(db_session, outsider, payload, notifier=notifier)

    project = redevelopment_service.create_project(db_session, secretary, payload, notifier=notifier)
    assert project.status == "planning"
    assert project.minimum_approval_percentage == 51
    assert [phase.name for phase in project.phases] == ["Demolition"]
    for member in members:
        assert db_session.query(Notification).filter_by(recipient_id=member.id, type="redevelopment_project_created").count() == 1


def test_first_proposal_moves_tender_to_proposals_received(db_session, society_setup, create_user, create_project, notifier):
    secretary, society = society_setup
    developer = create_user(email="dev@builders.example.com", role_name="DEVELOPER")
    project = create_project(society, secretary, status="tender_open")
    payload = DeveloperProposalCreate(
        title="Skyline offer",
        description="Two towers with podium parking",
        corpus_amount=3000000,
        rent_amount=40000,
        fsi=3.0,
        construction_cost=1000,
        legal_cost=50,
    )

    proposal = proposal_service.submit_proposal(db_session, project, developer, payload, notifier=notifier)

    db_session.refresh(project)
    assert project.status == "proposals_received"
    assert proposal.status == "submitted"
    assert float(proposal.total_cost) == 1050
    assert db_session.query(Notification).filter_by(recipient_id=secretary.id, type="developer_proposal_submitted").count() == 1
    assert "new_proposal" in notifier.events("project")

    with pytest.raises(InvalidStateTransition):
        proposal_service.submit_proposal(db_session, project, developer, payload, notifier=notifier)


def test_proposal_after_concurrent_cancel_keeps_project_cancelled(
    db_session, session_factory, society_setup, create_user, create_project, notifier
):
    secretary, society = society_setup
    developer = create_user(email="late@builders.example.com", role_name="DEVELOPER")
    project = create_project(society, secretary, status="tender_open")
    assert project.status == "tender_open"

    with session_factory() as other_session:
        other_project = other_session.get(RedevelopmentProject, project.id)
        redevelopment_service.cancel_project(other_session, other_project, secretary, notifier=notifier)

    payload = DeveloperProposalCreate(
        title="Late offer",
        description="Single tower",
        corpus_amount=1000000,
        rent_amount=20000,
        fsi=2.0,
    )
    with pytest.raises(InvalidStateTransition):
        proposal_service.submit_proposal(db_session, project, developer, payload, notifier=notifier)

    assert project.status == "cancelled"
    assert db_session.query(DeveloperProposal).filter_by(project_id=project.id).count() == 0


def test_evaluate_proposal_averages_scores(db_session, society_setup, create_user, create_project, create_proposal):
    from backend.schemas.schemas import ProposalEvaluation

    secretary, society = society_setup
    developer = create_user(email="dev5@builders.example.com", role_name="DEVELOPER")
    project = create_project(society, secretary, status="proposals_received")
    proposal = create_proposal(project, developer)

    evaluated = proposal_service.evaluate_proposal(
        db_session,
        proposal,
        secretary,
        ProposalEvaluation(technical_score=80, financial_score=71, timeline_score=70),
    )
    assert evaluated.overall_score == 74  # 73.67
    assert evaluated.status == "under_review"


def test_agreement_document_announces_signing(
    db_session, society_setup, create_user, create_members, create_project, notifier
):
    secretary, society = society_setup
    member = create_members(society, 1)[0]
    developer = create_user(email="dev6@builders.example.com", role_name="DEVELOPER")
    project = create_project(
        society, secretary, status="developer_selected", voting_status="closed", selected_developer_id=developer.id
    )

    redevelopment_service.add_document(
        db_session,
        project,
        secretary,
        ProjectDocumentCreate(name="Development agreement", document_type="agreement", url="https://files.example.com/a.pdf"),
        notifier=notifier,
    )

    assert db_session.query(Notification).filter_by(recipient_id=member.id, type="agreement_signed").count() == 1
    assert db_session.query(Notification).filter_by(recipient_id=developer.id, type="agreement_signed").count() == 1


def test_loser_of_concurrent_close_gets_stored_results(db_session, session_factory, society_setup, create_project, notifier):
    secretary, society = society_setup
    project = create_project(society, secretary, status="voting")
    # Load the open state into this session before the other caller closes the vote.
    assert project.voting_status == "open"

    with session_factory() as other_session:
        other_project = other_session.get(RedevelopmentProject, project.id)
        redevelopment_service.close_voting(other_session, other_project, "majority_reached", notifier=notifier)

    result = redevelopment_service.close_voting(db_session, project, "deadline_passed", notifier=notifier)

    assert result["already_closed"] is True
    assert result["reason"] == "majority_reached"
    assert project.voting_close_reason == "majority_reached"
    assert notifier.events("project").count("voting_closed") == 1
