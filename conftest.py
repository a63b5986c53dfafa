"""
Root pytest configuration.

This conftest is loaded before test collection to ensure
src is in the Python path for all imports.
"""

import sys
from pathlib import Path

# Add src to path IMMEDIATELY when this file is loaded
src_path = Path(__file__).parent / "src"
src_str = str(src_path.absolute())

# Ensure it's at the very front
if src_str in sys.path:
    sys.path.remove(src_str)
sys.path.insert(0, src_str)


import pytest


@pytest.fixture(autouse=True)
def _reset_process_singletons():
    """Reset process-wide singletons between tests for isolation."""
    yield
    from config.settings import get_settings
    from config.database import get_database_settings
    from database.connection import close_engine
    from database.encrypted_fields import get_encryption_key
    from core.access_control.dependencies import set_access_service

    set_access_service(None)
    get_settings.cache_clear()
    get_database_settings.cache_clear()
    get_encryption_key.cache_clear()
    close_engine()


def pytest_configure(config):
    """Additional path setup during pytest configuration."""
    if src_str not in sys.path:
        sys.path.insert(0, src_str)
