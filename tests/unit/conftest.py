# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Waits between retries and convergence checks return immediately."""
    monkeypatch.setattr("charms.mongodb_replset.v0.mongodb_replset.time.sleep", lambda _: None)
