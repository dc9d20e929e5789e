"""Prometheus metrics definitions for bucketsync.

All bucketsync metrics use the ``bucketsync_`` prefix for namespace
isolation. Collectors are created by init_metrics(); until then the
module-level references stay ``None`` and instrumented code skips
recording, so embedding applications that do not want metrics pay nothing.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Batch execution  (labels: status = success | error | dropped)
# ---------------------------------------------------------------------------
batch_operations_total: Counter | None = None
operation_retries_total: Counter | None = None
batch_duration_seconds: Histogram | None = None

# ---------------------------------------------------------------------------
# Reconciliation  (labels: outcome)
# ---------------------------------------------------------------------------
reconcile_keys_total: Counter | None = None

# ---------------------------------------------------------------------------
# Delegated URLs  (labels: verb)
# ---------------------------------------------------------------------------
urls_signed_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors
    in the global registry.
    """
    global _initialized
    global batch_operations_total, operation_retries_total, batch_duration_seconds
    global reconcile_keys_total, urls_signed_total

    if _initialized:
        return

    batch_operations_total = Counter(
        "bucketsync_batch_operations_total",
        "Total batch operations by terminal status",
        ["status"],
    )

    operation_retries_total = Counter(
        "bucketsync_operation_retries_total",
        "Total retries of batch operations after transient transport failures",
    )

    batch_duration_seconds = Histogram(
        "bucketsync_batch_duration_seconds",
        "Wall-clock duration of a whole batch run",
    )

    reconcile_keys_total = Counter(
        "bucketsync_reconcile_keys_total",
        "Keys classified by reconciliation, by outcome",
        ["outcome"],
    )

    urls_signed_total = Counter(
        "bucketsync_urls_signed_total",
        "Delegated URLs minted, by HTTP verb",
        ["verb"],
    )

    _initialized = True
