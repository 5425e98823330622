"""
Tests for the payments app.

This package contains test modules for:
- test_money.py, test_pricing.py, test_cancellation.py: Pure calculators
- test_escrow_ledger.py, test_locks.py, test_models.py: Ledger and storage
- test_orchestrator.py, test_premium_scheduler.py: Services on fake collaborators
- test_views.py, test_tasks.py: API endpoints and Celery tasks
- test_integration.py: Booking journeys end to end

Usage:
    pytest app/payments/tests/
    pytest -m e2e
"""
