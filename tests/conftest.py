"""Shared pytest configuration and fixtures for the guestvm test suite."""

import sys
from pathlib import Path

import pytest

from guestvm.core.feature_flags import FeatureFlags
from guestvm.core.paths import APP_DIR_ENV, AppPaths
from guestvm.core.platform_info import HostProfile

PROJECT_ROOT = Path(__file__).parent.parent


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "posix: test spawns POSIX shell scripts"
    )


def pytest_collection_modifyitems(config, items):
    """Skip shell-script tests on hosts without /bin/sh."""
    if sys.platform != "win32":
        return

    skip_posix = pytest.mark.skip(reason="Requires a POSIX shell")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip_posix)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def app_dir(tmp_path, monkeypatch) -> Path:
    """Isolated application directory exported through GUESTVM_HOME."""
    root = tmp_path / "guestvm-home"
    monkeypatch.setenv(APP_DIR_ENV, str(root))
    return root


@pytest.fixture
def app_paths(app_dir) -> AppPaths:
    return AppPaths(app_dir).ensure()


@pytest.fixture
def linux_host() -> HostProfile:
    return HostProfile(platform="linux", architecture="x86_64")


@pytest.fixture
def mac_arm_host() -> HostProfile:
    return HostProfile(platform="darwin", architecture="arm64")


@pytest.fixture
def mac_intel_host() -> HostProfile:
    return HostProfile(platform="darwin", architecture="x86_64")


@pytest.fixture
def no_flags() -> FeatureFlags:
    return FeatureFlags()


@pytest.fixture
def native_flags() -> FeatureFlags:
    return FeatureFlags(experimental_native_runtime=True)
