"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - api/        : HTTP surface through the FastAPI test client (fakes behind it)
    - integration/: Lock store and order repository SQL against live PostgreSQL
    - component/  : Service tests over in-memory fakes (no database, no gateway)
    - unit/       : Pure functions, no I/O
"""
import os
from datetime import datetime, timedelta, timezone

import pytest

# Set testing environment BEFORE any project imports read configuration
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("ENVIRONMENT", "testing")


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line("markers", "unit: pure logic tests, no I/O")
    config.addinivalue_line("markers", "component: service tests over in-memory fakes")
    config.addinivalue_line("markers", "api: HTTP surface tests")
    config.addinivalue_line("markers", "integration: real PostgreSQL, skipped when unreachable")
    config.addinivalue_line("markers", "requires_db: needs a live database")


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Controllable UTC clock; call it to read, advance() to move"""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
