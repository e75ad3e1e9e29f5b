"""
Pytest configuration and fixtures for EmailClean tests.
"""

import os
import shutil
import sys
import tempfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Local-only validation and an in-process store - must be set before importing app
os.environ["VALIDATOR_MODE"] = "syntax"
os.environ["STORE_BACKEND"] = "memory"
os.environ["AUTH_TOKENS"] = "token-alice:alice,token-bob:bob"

# Enable testing mode to disable background threads (like JobMonitor) and rate limiting
os.environ["TESTING"] = "1"

# Create a temporary directory for test storage
_test_temp_dir = tempfile.mkdtemp(prefix="emailclean_test_")
os.environ["STORAGE_DIR"] = _test_temp_dir
os.environ["DB_PATH"] = os.path.join(_test_temp_dir, "test.db")

# Import config first to apply the settings
import config  # noqa: E402

# Force reload config values after setting env vars
config.Config.STORAGE_DIR = _test_temp_dir
config.Config.DB_PATH = os.path.join(_test_temp_dir, "test.db")

import storage  # noqa: E402
from app import app as flask_app  # noqa: E402

ALICE = {"Authorization": "Bearer token-alice"}
BOB = {"Authorization": "Bearer token-bob"}


def pytest_configure(config):
    """Ensure storage is set up before tests."""
    storage.ensure_storage_dirs()


def pytest_unconfigure(config):
    """Clean up temporary directory."""
    global _test_temp_dir
    if _test_temp_dir and os.path.exists(_test_temp_dir):
        shutil.rmtree(_test_temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_store_and_storage():
    """Reset job store and storage before each test."""
    from app import clear_state_for_testing

    clear_state_for_testing()
    config.Config.set_time_provider(None)

    for directory in [storage.uploads_dir(), storage.results_dir()]:
        if directory.exists():
            for item in directory.iterdir():
                if item.is_dir():
                    shutil.rmtree(item, ignore_errors=True)
                else:
                    item.unlink()

    yield

    config.Config.set_time_provider(None)


@pytest.fixture
def app():
    """Create application for testing."""
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def alice_headers():
    return dict(ALICE)


@pytest.fixture
def bob_headers():
    return dict(BOB)


@pytest.fixture
def write_csv(tmp_path):
    """Write CSV text to a file and return its path."""

    def _write(text: str, name: str = "input.csv", encoding: str = "utf-8"):
        path = tmp_path / name
        path.write_bytes(text.encode(encoding))
        return path

    return _write
