from __future__ import annotations

import pytest

from neurox.services.telemetry import reset_counters


@pytest.fixture(autouse=True)
def clean_counters() -> None:
    # Counters are process-global; keep each test's assertions independent.
    reset_counters()
    yield
    reset_counters()
