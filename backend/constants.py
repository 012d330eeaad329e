DEFAULT_ROLES = [
    ("SOCIETY_OWNER", "Society owner or secretary managing redevelopment"),
    ("SOCIETY_MEMBER", "Flat owner belonging to a society"),
    ("DEVELOPER", "Developer submitting redevelopment proposals"),
    ("BROKER", "Property broker"),
    ("ADMIN", "Platform administrator with full access"),
]

# Higher number means more privileges
ROLE_PRIORITY = {
    "BROKER": 10,
    "SOCIETY_MEMBER": 20,
    "DEVELOPER": 30,
    "SOCIETY_OWNER": 40,
    "ADMIN": 100,
}

PROJECT_STATUSES = (
    "planning",
    "tender_open",
    "proposals_received",
    "voting",
    "voting_closed",
    "developer_selected",
    "construction",
    "completed",
    "cancelled",
)

PROJECT_TRANSITIONS = {
    "planning": {"tender_open", "cancelled"},
    "tender_open": {"proposals_received", "cancelled"},
    "proposals_received": {"voting", "cancelled"},
    "voting": {"voting_closed", "cancelled"},
    "voting_closed": {"developer_selected", "cancelled"},
    "developer_selected": {"construction", "cancelled"},
    "construction": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

# Targets reachable through the generic status endpoint. The voting states are
# only entered through open/close/select operations.
MANUAL_STATUS_TARGETS = {"tender_open", "construction", "completed", "cancelled"}

VOTING_STATUSES = ("open", "closed")
VOTE_VALUES = ("yes", "no", "abstain")
VOTING_SESSIONS = ("proposal_selection", "initial_approval", "developer_selection", "milestone_approval")
GENERAL_BALLOT_KEY = "general"

PHASE_STATUSES = ("pending", "in_progress", "completed", "delayed")
QUERY_STATUSES = ("open", "in_review", "resolved", "closed")
DOCUMENT_TYPES = ("tender_notice", "agm_minutes", "agreement", "approval", "design", "legal", "other")

PROPOSAL_STATUSES = ("draft", "submitted", "under_review", "shortlisted", "selected", "rejected", "withdrawn")
# Proposals still competing for selection.
LIVE_PROPOSAL_STATUSES = ("submitted", "under_review", "shortlisted")

MEMBER_ROLES = ("society_member", "committee_member", "treasurer", "secretary")
MEMBER_STATUSES = ("active", "pending", "removed", "suspended")
OWNERSHIP_TYPES = ("owner", "tenant", "family_member")

NOTIFICATION_PRIORITIES = ("low", "medium", "high", "urgent")

CLOSE_REASONS = ("deadline_passed", "majority_reached", "manual", "cancelled")

# Realtime transport events (room scoped)
EVENT_VOTE_CAST = "vote_cast"
EVENT_NEW_PROPOSAL = "new_proposal"
EVENT_PROJECT_UPDATE = "project_update"
EVENT_NEW_QUERY = "new_query"
EVENT_QUERY_RESPONSE = "query_response"
EVENT_DEVELOPER_SELECTED = "developer_selected"
EVENT_PROPOSAL_SELECTED = "proposal_selected"
EVENT_PROPOSAL_REJECTED = "proposal_rejected"
EVENT_VOTING_CLOSED = "voting_closed"
EVENT_NOTIFICATION_CREATED = "notification.created"
