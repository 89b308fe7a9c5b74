import os

import pytest

# Must be set before main/config are imported
os.environ.setdefault("APP_ENV", "testing")

from repositories import reset_ledger_store


@pytest.fixture(autouse=True)
def reset_state():
    """Start every test from an empty ledger store."""
    reset_ledger_store()
    yield
    reset_ledger_store()
