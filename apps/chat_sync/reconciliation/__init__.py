"""Chat group reconciliation engine."""

from apps.chat_sync.reconciliation.backup import MessageBackupService
from apps.chat_sync.reconciliation.context import (
    MembershipMirror,
    OrgDirectory,
    ReconciliationConfig,
    ReconciliationContext,
    VendorGateway,
)
from apps.chat_sync.reconciliation.desired import DesiredStateComputer, build_desired_groups
from apps.chat_sync.reconciliation.identity import IdentityResolution, IdentityResolver
from apps.chat_sync.reconciliation.members import MemberRoleEnforcer, detect_drift
from apps.chat_sync.reconciliation.observed import (
    ObservedState,
    VendorStateFetcher,
    classify_observed,
)
from apps.chat_sync.reconciliation.occupants import (
    GroupTarget,
    OccupantDiff,
    OccupantReconciler,
    compute_occupant_diff,
)
from apps.chat_sync.reconciliation.service import ChatGroupReconciler

__all__ = [
    "ChatGroupReconciler",
    "DesiredStateComputer",
    "GroupTarget",
    "IdentityResolution",
    "IdentityResolver",
    "MemberRoleEnforcer",
    "MembershipMirror",
    "MessageBackupService",
    "ObservedState",
    "OccupantDiff",
    "OccupantReconciler",
    "OrgDirectory",
    "ReconciliationConfig",
    "ReconciliationContext",
    "VendorGateway",
    "VendorStateFetcher",
    "build_desired_groups",
    "classify_observed",
    "compute_occupant_diff",
    "detect_drift",
]
