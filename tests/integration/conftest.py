"""Integration test conftest.

Inherits the root conftest.py fixtures (session_maker, test_org, processor,
etc.) and adds integration-specific markers.

Tests in this directory run real SQL against a per-test SQLite database
built from the same SQLModel metadata as production.
"""

import pytest


@pytest.fixture(autouse=True)
def _mark_integration(request):
    """Auto-mark all tests in this directory as integration."""
    request.node.add_marker(pytest.mark.integration)
