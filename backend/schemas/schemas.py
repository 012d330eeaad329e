from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, confloat, conint


class RoleRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserSummary(BaseModel):
    id: int
    email: Optional[str] = None
    phone: Optional[str] = None
    full_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# --- Membership ---------------------------------------------------------


class SocietyCreate(BaseModel):
    name: str
    address: Optional[str] = None
    total_flats: Optional[conint(ge=1)] = None


class SocietyRead(BaseModel):
    id: int
    name: str
    address: Optional[str]
    owner_user_id: int
    total_flats: Optional[int]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SocietyMemberCreate(BaseModel):
    user_id: int
    role: Literal["society_member", "committee_member", "treasurer", "secretary"] = "society_member"
    flat_number: Optional[str] = None
    block_number: Optional[str] = None
    ownership_type: Literal["owner", "tenant", "family_member"] = "owner"
    notes: Optional[str] = Field(None, max_length=500)


class SocietyMemberRead(BaseModel):
    id: int
    society_id: int
    user_id: int
    role: str
    status: str
    flat_number: Optional[str]
    block_number: Optional[str]
    ownership_type: str
    joined_at: datetime
    removed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


# --- Projects -----------------------------------------------------------


class ProjectPhaseCreate(BaseModel):
    name: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProjectPhaseRead(BaseModel):
    id: int
    sequence_order: int
    name: str
    description: Optional[str]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    status: str
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ProjectPhaseStatusUpdate(BaseModel):
    status: Literal["pending", "in_progress", "completed", "delayed"]


class RedevelopmentProjectCreate(BaseModel):
    title: str = Field(..., max_length=200)
    description: str
    society_id: int
    expected_amenities: List[str] = []
    start_date: Optional[datetime] = None
    expected_completion_date: Optional[datetime] = None
    phases: List[ProjectPhaseCreate] = []
    estimated_budget: Optional[Decimal] = None
    corpus_amount: Optional[Decimal] = None
    rent_amount: Optional[Decimal] = None
    minimum_approval_percentage: Optional[conint(ge=1, le=100)] = None
    voting_session: Optional[str] = None
    is_public: bool = True
    allow_member_queries: bool = True


class RedevelopmentProjectRead(BaseModel):
    id: int
    title: str
    description: str
    society_id: int
    owner_user_id: int
    expected_amenities: List[str]
    start_date: Optional[datetime]
    expected_completion_date: Optional[datetime]
    status: str
    progress: int
    estimated_budget: Optional[Decimal]
    corpus_amount: Optional[Decimal]
    rent_amount: Optional[Decimal]
    voting_session: str
    voting_deadline: Optional[datetime]
    voting_status: str
    voting_closed_at: Optional[datetime]
    voting_close_reason: Optional[str]
    minimum_approval_percentage: int
    selected_developer_id: Optional[int]
    selected_proposal_id: Optional[int]
    developer_selected_at: Optional[datetime]
    developer_selected_by_user_id: Optional[int]
    is_public: bool
    allow_member_queries: bool
    created_at: datetime
    updated_at: datetime
    phases: List[ProjectPhaseRead] = []

    model_config = ConfigDict(from_attributes=True)


class ProjectStatusUpdate(BaseModel):
    target_status: Literal["tender_open", "construction", "completed", "cancelled"]
    notes: Optional[str] = None


class ProjectProgressUpdate(BaseModel):
    progress: conint(ge=0, le=100)


class OpenVotingRequest(BaseModel):
    deadline: datetime


class CloseVotingRequest(BaseModel):
    reason: Literal["manual", "deadline_passed", "majority_reached"] = "manual"


class SelectDeveloperRequest(BaseModel):
    developer_id: int
    proposal_id: int


class ProjectUpdateCreate(BaseModel):
    title: str
    description: Optional[str] = None
    is_important: bool = False


class ProjectUpdateRead(BaseModel):
    id: int
    title: str
    description: Optional[str]
    posted_by_user_id: int
    posted_at: datetime
    is_important: bool

    model_config = ConfigDict(from_attributes=True)


class ProjectQueryCreate(BaseModel):
    title: str
    description: Optional[str] = None


class ProjectQueryResponse(BaseModel):
    response: str
    status: Literal["in_review", "resolved", "closed"] = "resolved"


class ProjectQueryRead(BaseModel):
    id: int
    title: str
    description: Optional[str]
    raised_by_user_id: int
    raised_at: datetime
    status: str
    response: Optional[str]
    responded_by_user_id: Optional[int]
    responded_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ProjectDocumentCreate(BaseModel):
    name: str
    document_type: Literal["tender_notice", "agm_minutes", "agreement", "approval", "design", "legal", "other"] = "other"
    url: str
    is_public: bool = False


class ProjectDocumentRead(BaseModel):
    id: int
    name: str
    document_type: str
    url: str
    uploaded_by_user_id: int
    uploaded_at: datetime
    is_public: bool

    model_config = ConfigDict(from_attributes=True)


# --- Proposals ----------------------------------------------------------


class ProposedAmenity(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[Literal["security", "recreation", "utility", "commercial", "parking", "other"]] = None


class ProposedPhase(BaseModel):
    name: str
    description: Optional[str] = None
    duration_months: Optional[int] = None
    milestones: List[str] = []


class PaymentScheduleItem(BaseModel):
    phase: str
    percentage: Optional[float] = None
    amount: Optional[Decimal] = None
    due_date: Optional[datetime] = None


class DeveloperInfo(BaseModel):
    company_name: Optional[str] = None
    experience_years: Optional[int] = None
    completed_projects: Optional[int] = None
    certifications: List[str] = []
    contact_person: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    website: Optional[str] = None


class DeveloperProposalCreate(BaseModel):
    title: str
    description: str
    corpus_amount: Decimal = Field(..., ge=0)
    rent_amount: Decimal = Field(..., ge=0)
    fsi: confloat(ge=0)
    proposed_amenities: List[ProposedAmenity] = []
    timeline_summary: Optional[str] = None
    proposed_start_date: Optional[datetime] = None
    proposed_completion_date: Optional[datetime] = None
    proposed_phases: List[ProposedPhase] = []
    construction_cost: Optional[Decimal] = None
    amenities_cost: Optional[Decimal] = None
    legal_cost: Optional[Decimal] = None
    contingency_cost: Optional[Decimal] = None
    payment_schedule: List[PaymentScheduleItem] = []
    developer_info: DeveloperInfo = DeveloperInfo()


class ProposalEvaluation(BaseModel):
    technical_score: conint(ge=0, le=100)
    financial_score: conint(ge=0, le=100)
    timeline_score: conint(ge=0, le=100)
    comments: Optional[str] = Field(None, max_length=1000)


class DeveloperProposalRead(BaseModel):
    id: int
    project_id: int
    developer_id: int
    title: str
    description: str
    corpus_amount: Decimal
    rent_amount: Decimal
    fsi: float
    proposed_amenities: List[Dict[str, Any]]
    timeline_summary: Optional[str]
    proposed_start_date: Optional[datetime]
    proposed_completion_date: Optional[datetime]
    proposed_phases: List[Dict[str, Any]]
    construction_cost: Optional[Decimal]
    amenities_cost: Optional[Decimal]
    legal_cost: Optional[Decimal]
    contingency_cost: Optional[Decimal]
    total_cost: Optional[Decimal]
    payment_schedule: List[Dict[str, Any]]
    developer_info: Dict[str, Any]
    status: str
    submitted_at: datetime
    technical_score: Optional[int]
    financial_score: Optional[int]
    timeline_score: Optional[int]
    overall_score: Optional[int]
    evaluated_at: Optional[datetime]
    evaluation_comments: Optional[str]

    model_config = ConfigDict(from_attributes=True)


# --- Votes --------------------------------------------------------------


class VoteCast(BaseModel):
    project_id: int
    vote: Literal["yes", "no", "abstain"]
    voting_session: Optional[str] = Field(None, min_length=1)
    proposal_id: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


class MemberVoteRead(BaseModel):
    id: int
    project_id: int
    member_id: int
    voting_session: str
    proposal_id: Optional[int]
    vote: str
    reason: Optional[str]
    is_verified: bool
    verified_at: Optional[datetime]
    voted_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VoteTallyRead(BaseModel):
    yes: int
    no: int
    abstain: int
    total: int
    approval_percentage: int


class AutoCloseRead(BaseModel):
    closed: bool
    reason: str


class VoteCastResult(BaseModel):
    vote: MemberVoteRead
    tally: VoteTallyRead
    auto_close: AutoCloseRead


class VotingStatisticsRead(BaseModel):
    total_members: int
    total_votes: int
    participants: int
    yes_votes: int
    no_votes: int
    abstain_votes: int
    approval_percentage: int
    participation_rate: int
    minimum_approval_required: int
    is_approved: bool
    project_status: str
    voting_status: str
    voting_deadline: Optional[datetime]
    hours_remaining: Optional[int]
    voting_session: str


class VotingResultsRead(BaseModel):
    statistics: VotingStatisticsRead
    final_results: Optional[Dict[str, Any]] = None


# --- Notifications ------------------------------------------------------


class ProjectEventMetadata(BaseModel):
    kind: Literal[
        "redevelopment_project_created",
        "voting_closed",
        "agreement_signed",
        "construction_started",
        "project_completed",
    ]
    project_title: str
    status: Optional[str] = None


class StatusChangedMetadata(BaseModel):
    kind: Literal["redevelopment_status_changed"]
    project_title: str
    old_status: str
    new_status: str


class ProposalEventMetadata(BaseModel):
    kind: Literal[
        "developer_proposal_submitted",
        "developer_proposal_shortlisted",
        "developer_proposal_selected",
        "developer_proposal_rejected",
    ]
    project_title: str
    proposal_title: str
    corpus_amount: Optional[float] = None
    rent_amount: Optional[float] = None


class VotingOpenedMetadata(BaseModel):
    kind: Literal["voting_opened"]
    project_title: str
    deadline: datetime


class VotingReminderMetadata(BaseModel):
    kind: Literal["voting_reminder"]
    project_title: str
    deadline: datetime
    days_left: int


class ManualSelectionMetadata(BaseModel):
    kind: Literal["voting_closed_manual_selection"]
    project_title: str
    close_reason: str
    approval_percentage: int
    is_approved: bool
    winning_proposal_id: Optional[int] = None
    winning_proposal_title: Optional[str] = None


class VotingResultsMetadata(BaseModel):
    kind: Literal["voting_results_published"]
    project_title: str
    approval_percentage: int
    is_approved: bool
    total_votes: int


class MilestoneMetadata(BaseModel):
    kind: Literal["project_milestone_completed", "construction_milestone"]
    project_title: str
    milestone: str


class DocumentMetadata(BaseModel):
    kind: Literal["project_document_uploaded"]
    project_title: str
    document_name: str
    document_type: str


class QueryMetadata(BaseModel):
    kind: Literal["project_query_raised", "project_query_responded"]
    project_title: str
    query_title: str


class UpdatePostedMetadata(BaseModel):
    kind: Literal["project_update_posted"]
    project_title: str
    update_title: str


NotificationMetadata = Annotated[
    Union[
        ProjectEventMetadata,
        StatusChangedMetadata,
        ProposalEventMetadata,
        VotingOpenedMetadata,
        VotingReminderMetadata,
        ManualSelectionMetadata,
        VotingResultsMetadata,
        MilestoneMetadata,
        DocumentMetadata,
        QueryMetadata,
        UpdatePostedMetadata,
    ],
    Field(discriminator="kind"),
]


class NotificationData(BaseModel):
    redevelopment_project_id: Optional[int] = None
    proposal_id: Optional[int] = None
    vote_id: Optional[int] = None
    society_id: Optional[int] = None
    metadata: Optional[NotificationMetadata] = None


class NotificationRead(BaseModel):
    id: int
    recipient_id: int
    sender_id: Optional[int]
    type: str
    title: str
    message: str
    data: NotificationData
    is_read: bool
    read_at: Optional[datetime]
    priority: str
    expires_at: Optional[datetime]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationMarkRead(BaseModel):
    notification_ids: List[int] = []
