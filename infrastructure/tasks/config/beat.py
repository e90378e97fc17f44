"""Celery beat schedule configuration.

Keeping the structure close to the Celery docs makes copying snippets
straightforward for new periodic jobs.
"""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    # 修正长时间 pending 的网关支付
    "payments-reconcile-stale-pending": {
        "task": "payments.reconcile_stale_pending",
        "schedule": 300.0,  # every 5 minutes
    },
}
