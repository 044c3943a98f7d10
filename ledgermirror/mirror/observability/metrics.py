# MIT License
# Copyright (c) 2025 Hashborn

"""
Prometheus Metrics Exporter

Exports cache-reconciliation metrics in Prometheus format.

Metrics:
- Sync cycles run, cycle duration
- Diffs found per kind
- Apply outcomes (applied, failed, deferred)
- Unresolved and escalated pairs
- Cooldown and property-state rows checked
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create registry for metrics
metrics_registry = CollectorRegistry()

# ═══════════════════════════════════════════════════════════════════
# SYNC CYCLE METRICS
# ═══════════════════════════════════════════════════════════════════

sync_cycles_total = Counter(
    'ledgermirror_sync_cycles_total',
    'Total number of sync cycles run',
    ['outcome'],
    registry=metrics_registry
)

cycle_duration_seconds = Histogram(
    'ledgermirror_cycle_duration_seconds',
    'Wall time of a sync cycle',
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300],
    registry=metrics_registry
)

pairs_checked_total = Counter(
    'ledgermirror_pairs_checked_total',
    'Total (wallet, property) pairs checked',
    registry=metrics_registry
)

states_checked_total = Counter(
    'ledgermirror_states_checked_total',
    'Total cooldown and property-state rows checked',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# DRIFT METRICS
# ═══════════════════════════════════════════════════════════════════

diffs_total = Counter(
    'ledgermirror_diffs_total',
    'Discrepancies found between ledger and cache',
    ['kind'],
    registry=metrics_registry
)

apply_total = Counter(
    'ledgermirror_apply_total',
    'Corrective cache writes by result',
    ['result'],
    registry=metrics_registry
)

unresolved_pairs = Gauge(
    'ledgermirror_unresolved_pairs',
    'Pairs left unresolved by the most recent cycle',
    registry=metrics_registry
)

escalated_pairs = Gauge(
    'ledgermirror_escalated_pairs',
    'Pairs flagged for manual inspection',
    registry=metrics_registry
)


def update_cycle_metrics(report, flagged_count: int = 0):
    """
    Update metrics from a finished cycle.

    Args:
        report: ReconciliationReport
        flagged_count: Pairs currently flagged by the unresolved tracker
    """
    sync_cycles_total.labels(outcome="cancelled" if report.cancelled else "completed").inc()
    cycle_duration_seconds.observe(max(report.finished_at - report.started_at, 0.0))
    pairs_checked_total.inc(report.pairs_checked)
    states_checked_total.inc(report.states_checked)

    diffs_total.labels(kind="MISSING_IN_CACHE").inc(report.missing_in_cache)
    diffs_total.labels(kind="STALE_IN_CACHE").inc(report.stale_in_cache)
    diffs_total.labels(kind="FIELD_MISMATCH").inc(report.mismatched)

    apply_total.labels(result="applied").inc(report.applied)
    apply_total.labels(result="failed").inc(report.failed)
    apply_total.labels(result="deferred").inc(report.deferred)

    unresolved_pairs.set(report.unresolved)
    escalated_pairs.set(flagged_count)
