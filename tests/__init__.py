"""
MedNudge Test Suite
===================

This package contains all tests for the MedNudge reminder and escalation system.

Test Structure:
- test_queues/: Delayed job queue, backends and workers
- test_services/: Schedule expansion, lifecycle mutators and escalation bookkeeping
- test_actions/: Reminder delivery, responses and the escalation levels
- test_api/: API endpoint tests for FastAPI routes
- conftest.py: Shared pytest fixtures

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_queues/

    # Run with verbose output
    pytest -v
"""
