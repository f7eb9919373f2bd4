"""Prometheus metrics for the chat sync service.

Usage:
    from apps.chat_sync.metrics import POD_LABEL, reconciliations_total

    reconciliations_total.labels(operation="branch", status="success", pod=POD_LABEL).inc()
"""

from __future__ import annotations

import os

from prometheus_client import Counter, Gauge, Histogram

# Pod label for Prometheus metrics
POD_LABEL = os.getenv("POD_NAME") or os.getenv("HOSTNAME") or "unknown"

# ============================================================================
# Reconciliation Metrics
# ============================================================================

reconciliations_total = Counter(
    "chat_sync_reconciliations_total",
    "Total reconciliation passes",
    ["operation", "status", "pod"],  # operation: branch, member; status: success, failed, skipped
)

reconciliation_duration_seconds = Histogram(
    "chat_sync_reconciliation_duration_seconds",
    "Wall time of one reconciliation pass",
    ["operation"],
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

vendor_mutations_total = Counter(
    "chat_sync_vendor_mutations_total",
    "Successful mutating calls to the chat vendor",
    ["action", "pod"],
)

batch_failures_total = Counter(
    "chat_sync_batch_failures_total",
    "Items that failed inside a batch and were skipped",
    ["operation", "pod"],
)

messages_backed_up_total = Counter(
    "chat_sync_messages_backed_up_total",
    "Vendor messages copied into the backup table",
    ["pod"],
)

# ============================================================================
# Service Health Metrics
# ============================================================================

database_connection_status = Gauge(
    "chat_sync_database_connection_status",
    "Database connection status (1=up, 0=down)",
)

redis_connection_status = Gauge(
    "chat_sync_redis_connection_status",
    "Redis connection status (1=up, 0=down)",
)
