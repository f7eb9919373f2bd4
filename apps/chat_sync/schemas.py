"""
Pydantic schemas for the chat group sync service.

Defines models for:
- Org directory members and branches
- Vendor users, groups and messages
- Local membership mirror records
- API requests and responses
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Vendor id placeholder for members whose identity could not be resolved
UNKNOWN_VENDOR_ID = "UNK_ID"

# Job levels that make up a branch roster (field staff and branch admins)
ROSTER_JOB_LEVELS: tuple[int, ...] = (1, 2, 3, 4, 5)


class ActiveStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class MemberClassification(str, Enum):
    FIELD_STAFF = "FieldStaff"
    BRANCH_ADMIN = "BranchAdmin"
    CONTROLLED_ADMIN = "ControlledAdmin"
    ADMIN = "Admin"
    SUPER_ADMIN = "SuperAdmin"


class JobCategory(str, Enum):
    CLINICAL = "Clinical"
    NON_CLINICAL = "NonClinical"


class GroupCategory(str, Enum):
    ALL_MEMBERS = "AllMembers"
    CLINICAL = "Clinical"
    NON_CLINICAL = "NonClinical"
    INDIVIDUAL = "Individual"


class GroupType(str, Enum):
    """Vendor group type. Broadcast groups are announcement-only."""

    BROADCAST = "broadcast"
    GROUP = "group"


class VisibilityLevel(str, Enum):
    SELF = "self"
    ADMIN = "admin"
    ALL = "all"


def classify_job_level(level: int) -> MemberClassification:
    """
    Map a numeric access level to a member classification.

    Examples:
        >>> classify_job_level(1)
        <MemberClassification.FIELD_STAFF: 'FieldStaff'>
        >>> classify_job_level(6)
        <MemberClassification.CONTROLLED_ADMIN: 'ControlledAdmin'>
    """
    if level == 9:
        return MemberClassification.SUPER_ADMIN
    if level >= 7:
        return MemberClassification.ADMIN
    if level == 6:
        return MemberClassification.CONTROLLED_ADMIN
    if level >= 2:
        return MemberClassification.BRANCH_ADMIN
    return MemberClassification.FIELD_STAFF


class MemberRef(NamedTuple):
    """A (vendor id, employee id) pair; the unit of group membership."""

    vendor_id: str
    employee_ps_id: str


# ==============================================================================
# Org Directory Models
# ==============================================================================


class Branch(BaseModel):
    branch_id: str
    branch_name: str


class OrgMember(BaseModel):
    """Member as held by the org directory. Read-only to the sync engine."""

    employee_ps_id: str
    display_name: str
    work_email: str
    selected_branch_ids: list[str] = Field(default_factory=list)
    overridden_branch_ids: list[str] = Field(default_factory=list)
    job_id: str | None = None
    job_code: str | None = None
    job_level: int = 1
    access_level: int | None = Field(
        None, description="Access override level; takes precedence over job_level"
    )
    access_job_id: str | None = Field(None, description="Job id of the access override")
    active_status: ActiveStatus = ActiveStatus.ACTIVE
    vendor_id: str | None = None
    profile_image_url: str | None = None

    @field_validator("vendor_id", mode="before")
    @classmethod
    def _parse_vendor_id(cls, value: Any) -> Any:
        # Legacy records store "id|password"
        if isinstance(value, str):
            value = value.split("|", 1)[0].strip()
            return value or None
        return value

    @property
    def effective_branch_ids(self) -> list[str]:
        return list(self.overridden_branch_ids or self.selected_branch_ids)

    @property
    def effective_level(self) -> int:
        return self.access_level if self.access_level is not None else self.job_level

    @property
    def effective_job_id(self) -> str | None:
        return self.access_job_id or self.job_id

    @property
    def classification(self) -> MemberClassification:
        return classify_job_level(self.effective_level)

    @property
    def is_active(self) -> bool:
        return self.active_status == ActiveStatus.ACTIVE

    @property
    def has_vendor_identity(self) -> bool:
        return self.vendor_id is not None and self.vendor_id != UNKNOWN_VENDOR_ID

    def ref(self) -> MemberRef:
        if self.vendor_id is None or self.vendor_id == UNKNOWN_VENDOR_ID:
            raise ValueError(f"Member {self.employee_ps_id} has no vendor identity")
        return MemberRef(vendor_id=self.vendor_id, employee_ps_id=self.employee_ps_id)


# ==============================================================================
# Vendor Models
# ==============================================================================


class VendorUserData(BaseModel):
    """Custom data the vendor stores with each user."""

    ps_id: str
    branch_ids: list[str] = Field(default_factory=list)
    job_id: str | None = None
    job_code: str | None = None
    job_level: int | None = None
    access_level: int | None = None
    profile_image: str | None = None


class VendorUser(BaseModel):
    id: str
    email: str | None = None
    full_name: str | None = None
    custom_data: VendorUserData | None = None
    last_request_at: datetime | None = None


class VendorUserPayload(BaseModel):
    """Create payload for a member without a vendor identity."""

    employee_ps_id: str
    email: str
    display_name: str
    custom_data: VendorUserData


class VendorUserUpdate(BaseModel):
    email: str
    full_name: str
    custom_data: VendorUserData


class VendorGroup(BaseModel):
    """Group as observed in the vendor."""

    id: str
    name: str
    occupant_ids: list[str] = Field(default_factory=list)
    is_announcement: bool = False
    is_archived: bool = False
    branch_id: str | None = None
    branch_name: str | None = None
    primary_member_ps_id: str | None = None
    created_at: datetime | None = None

    @property
    def group_type(self) -> GroupType:
        return GroupType.BROADCAST if self.is_announcement else GroupType.GROUP


class GroupPayload(BaseModel):
    name: str
    occupant_ids: list[str]
    branch_id: str
    branch_name: str
    is_announcement: bool
    is_archived: bool = False
    primary_member_ps_id: str | None = None


class VendorMessage(BaseModel):
    id: str
    group_id: str
    sender_id: str | None = None
    body: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    sent_at: datetime


@dataclass(frozen=True)
class GroupFilter:
    """Vendor group query. Unset fields do not constrain the result."""

    branch_id: str | None = None
    group_id: str | None = None
    vendor_ids: tuple[str, ...] = ()
    group_type: GroupType | None = None


# ==============================================================================
# Desired State
# ==============================================================================


@dataclass(frozen=True)
class DesiredGroup:
    """A group the organization wants to exist, recomputed on every pass."""

    branch_id: str
    category: GroupCategory
    group_type: GroupType
    name: str
    members: frozenset[MemberRef]
    primary_member_ps_id: str | None = None


# ==============================================================================
# Membership Mirror
# ==============================================================================


class MembershipRecord(BaseModel):
    """One row of the local membership mirror."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    group_id: str
    branch_id: str
    vendor_id: str
    employee_ps_id: str
    group_name: str
    group_type: GroupType
    visibility_level: VisibilityLevel = VisibilityLevel.ADMIN
    is_group_creator: bool = False
    is_archived: bool = False
    is_activated: bool = True
    active_status: ActiveStatus = ActiveStatus.ACTIVE
    last_message_activity: datetime | None = None
    last_seen_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class MembershipFilter:
    """
    Mirror query. Scalar fields match by equality, tuple fields by membership.

    Example:
        >>> MembershipFilter(branch_id="42", employee_ps_ids=("PS-1", "PS-2"), is_group_creator=True)
    """

    group_id: str | None = None
    group_ids: tuple[str, ...] | None = None
    exclude_group_id: str | None = None
    branch_id: str | None = None
    branch_ids: tuple[str, ...] | None = None
    vendor_id: str | None = None
    vendor_ids: tuple[str, ...] | None = None
    employee_ps_id: str | None = None
    employee_ps_ids: tuple[str, ...] | None = None
    group_type: GroupType | None = None
    is_group_creator: bool | None = None
    is_archived: bool | None = None
    active_status: ActiveStatus | None = None


# ==============================================================================
# API Models
# ==============================================================================


class BranchSyncResponse(BaseModel):
    branch_id: str
    synced: bool
    transaction_id: str | None = None


class MemberSyncResponse(BaseModel):
    employee_ps_id: str
    transaction_id: str | None = None


class BackupResult(BaseModel):
    branch_id: str
    groups_processed: int = 0
    messages_backed_up: int = 0
    next_group_skip: int = 0


class HealthResponse(BaseModel):
    """Health check response."""

    status: str  # "healthy", "degraded", "unhealthy"
    service: str
    version: str
    timestamp: datetime
    database_connected: bool
    redis_connected: bool | None = None
    details: dict[str, Any] | None = None
