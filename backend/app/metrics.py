# backend/app/metrics.py
from prometheus_client import Counter, Gauge

# === Core metrics (definitions ONLY here) ===
changes_created_total = Counter(
    "changes_created_total", "Change requests created", ["change_type", "workflow"]
)

approval_decisions_total = Counter(
    "approval_decisions_total", "Approval decisions recorded", ["decision"]
)

approval_outcomes_total = Counter(
    "approval_outcomes_total", "Changes reaching a terminal approval outcome", ["outcome"]
)

workflow_conflicts_total = Counter(
    "workflow_conflicts_total", "Rejected approval attempts", ["kind"]
)

notifications_total = Counter(
    "notifications_total", "Outbound notifications", ["event", "outcome"]
)

pending_approvals_gauge = Gauge(
    "pending_approvals", "Approval rows currently pending"
)

def init_metrics_zero():
    # create label combos at 0 so Grafana never sees "no data"
    for d in ("approved", "rejected"):
        approval_decisions_total.labels(decision=d).inc(0)
        approval_outcomes_total.labels(outcome=d).inc(0)
    for k in ("not_found", "already_decided", "invalid_routing", "out_of_sequence"):
        workflow_conflicts_total.labels(kind=k).inc(0)
    for e in ("approval_required", "change_approved", "change_rejected"):
        for o in ("sent", "skipped", "failed"):
            notifications_total.labels(event=e, outcome=o).inc(0)

# Small helper so everyone updates the same gauge in the same way
def refresh_pending_gauge(db):
    from app.models.approval import ChangeApproval
    n = db.query(ChangeApproval).filter(ChangeApproval.status == "pending").count()
    pending_approvals_gauge.set(n)
