# backend/consultflow/tasks/__init__.py
"""
Celery tasks for Consultflow.

Background jobs: the scheduled payment-email sweeper and the monthly
invoice consolidation.
"""

from consultflow.tasks.celery_app import celery_app

__all__ = ["celery_app"]
