"""
Shared fixtures: a temporary event ledger and an event factory.
"""

import os
import tempfile
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest

from usage_aggregation.storage.models import Event
from usage_aggregation.storage.repository import initialize_schema

SUBSCRIPTION_ID = "sub_123"
CODE = "bm_code"


@pytest.fixture
def db_path():
    """Path to an initialized SQLite database removed after the test."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def make_event():
    """Factory building events for the default subscription and code."""
    def _make_event(
        timestamp: datetime,
        properties: Optional[dict] = None,
        code: str = CODE,
        subscription_id: str = SUBSCRIPTION_ID,
        transaction_id: Optional[str] = None,
        precise_total_amount_cents: Optional[Decimal] = None,
        organization_id: Optional[str] = None,
    ) -> Event:
        return Event(
            transaction_id=transaction_id or uuid.uuid4().hex,
            external_subscription_id=subscription_id,
            code=code,
            timestamp=timestamp,
            properties=properties or {},
            organization_id=organization_id,
            precise_total_amount_cents=precise_total_amount_cents,
        )

    return _make_event
