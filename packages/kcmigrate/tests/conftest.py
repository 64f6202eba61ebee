"""
Pytest configuration for kcmigrate tests.

Engine tests run against in-memory adapters (see fakes.py); nothing here
needs a database, a container runtime or a cluster. The capability banner
only reports which real tools happen to be installed on this host.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from kcmigrate import EngineSettings

from fakes import make_profile

EXTERNAL_TOOLS = ["psql", "pg_dump", "mysql", "mysqldump", "docker", "kubectl", "systemctl"]


def pytest_configure(config):
    """Report which external tools exist, so nobody mistakes fakes for integration coverage."""
    print("\n" + "=" * 60)
    print("TEST CAPABILITIES")
    print("=" * 60)
    for tool in EXTERNAL_TOOLS:
        print(f"tool.{tool:<12} = {str(shutil.which(tool) is not None).lower()}")
    print("adapters.engine_tests = fakes (no external tools used)")
    print("=" * 60)
    print()


@pytest.fixture
def temp_workspace():
    """Create temporary workspace for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_workspace):
    """Engine settings with state and audit inside the temp workspace."""
    return EngineSettings(workspace=temp_workspace / "state", lock_lease_seconds=600)


@pytest.fixture
def profile(temp_workspace):
    """16.1.1 → 26.0.7 through 18.0, 21.0 and 24.0 (four steps)."""
    return make_profile(temp_workspace)
