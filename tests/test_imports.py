# test_imports.py
import importlib

import pytest


@pytest.mark.parametrize("module", [
    "tryon_core.storage.db",
    "tryon_core.storage.models",
    "tryon_core.storage.repository",
    "tryon_core.config.loader",
    "tryon_core.core.errors",
    "tryon_core.core.ledger",
    "tryon_core.core.jobs",
    "tryon_core.core.dispatcher",
    "tryon_core.core.scenarios",
    "tryon_core.core.service",
    "tryon_core.client",
    "tryon_core.api",
    "tryon_core.cli.main",
])
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_public_entry_points():
    from tryon_core.api import create_app
    from tryon_core.client import JobPoller, PollResult

    assert callable(create_app)
    assert JobPoller.__name__ == "JobPoller"
    assert PollResult.__name__ == "PollResult"
