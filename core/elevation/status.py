"""
Status reporter - aggregate health and statistics for the elevation system.

Derived entirely from the grant store and the scheduler; nothing here
mutates state.
"""
from datetime import datetime

from core.elevation import store

HEALTH_OK = 'OK'
HEALTH_WARNING = 'WARNING: Expired grants detected'


def get_system_status(scheduler, now=None):
    """Build the system status report.

    Args:
        scheduler: Scheduler whose pending jobs are counted.
        now: Reference time (defaults to utcnow).

    Returns:
        dict with current_time, total_grants_ever, status_breakdown,
        active_grants{count, next_expiry, last_expiry}, scheduled_job_count,
        overdue_grants, system_health.
    """
    now = now or datetime.utcnow()

    count, next_expiry, last_expiry = store.active_expiry_window()
    overdue = len(store.overdue_grants(now)) if count else 0

    return {
        'current_time': now.isoformat(),
        'total_grants_ever': store.total_grants(),
        'status_breakdown': store.status_breakdown(),
        'active_grants': {
            'count': count,
            'next_expiry': next_expiry.isoformat() if next_expiry else None,
            'last_expiry': last_expiry.isoformat() if last_expiry else None,
        },
        'scheduled_job_count': scheduler.pending_count(),
        'overdue_grants': overdue,
        # Overdue active grants mean the scheduler or cleanup is lagging.
        'system_health': HEALTH_WARNING if overdue else HEALTH_OK,
    }
