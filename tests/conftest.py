import pytest
from structlog.testing import capture_logs


@pytest.fixture(autouse=True)
def log_events():
    """Collect structured log events instead of printing them to stdout."""
    with capture_logs() as events:
        yield events
