"""
Global pytest configuration for the telehealth subscription engine tests.
"""

import os

# Settings are read at import time; pin a test environment before any
# telehealth module is imported.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./pytest.db")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")

import pytest  # noqa: E402

from telehealth.billing.config import set_billing_config  # noqa: E402
from telehealth.billing.metrics import set_billing_metrics  # noqa: E402
from telehealth.settings import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_global_state():
    """Drop cached settings, billing config and metrics between tests."""
    yield
    reset_settings()
    set_billing_config(None)
    set_billing_metrics(None)
