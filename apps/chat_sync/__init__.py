"""
Chat Group Sync Service.

Keeps the chat vendor's groups and occupants consistent with branch rosters
held by the org directory:
1. Resolve a vendor identity for every active branch member
2. Compute the desired broadcast and individual groups of the branch
3. Read the groups the vendor currently holds
4. Diff desired against observed occupants and apply the corrections
5. Mirror memberships into PostgreSQL for fast lookup by branch or member

Architecture:
    API / CLI → ChatGroupReconciler → Org Directory (HTTP)
                                    → Chat Vendor (HTTP)
                                    → Membership mirror (PostgreSQL)
"""

__version__ = "0.1.0"
