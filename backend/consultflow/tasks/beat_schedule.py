# backend/consultflow/tasks/beat_schedule.py
"""
Celery Beat schedule configuration for Consultflow.
"""

from typing import Any, Dict

from celery.schedules import crontab


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        # Scheduled payment request emails (lead-time and after-session bills)
        "send-scheduled-bill-emails": {
            "task": "consultflow.tasks.billing_tasks.send_scheduled_bill_emails",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "billing", "expires": 240},
        },
        # Previous month's consolidated invoices, on the 1st at 06:00 UTC
        "run-monthly-invoicing": {
            "task": "consultflow.tasks.billing_tasks.run_monthly_invoicing",
            "schedule": crontab(day_of_month="1", hour=6, minute=0),
            "options": {"queue": "billing"},
        },
    }
