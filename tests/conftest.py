"""
Shared pytest fixtures for action orchestration engine tests.

Provides fixtures for:
- Mock chat-completion clients
- Temporary sqlite CRM stores and a seeded account
- Feature flag overrides
"""

from pathlib import Path
from types import SimpleNamespace

import pytest

from src.feature_flags import flags
from src.store import CRMStore
from tests.helpers import scripted_llm, seed_crm, text_completion


# =============================================================================
# Mock LLM Fixtures
# =============================================================================

@pytest.fixture
def mock_llm():
    """Mock client that always answers with a substantive text."""
    return scripted_llm([text_completion("Olá! Como posso ajudar você hoje?")] * 10)


@pytest.fixture
def llm_factory():
    """Factory for scripted mock clients."""
    return scripted_llm


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def store(tmp_path: Path) -> CRMStore:
    return CRMStore(str(tmp_path / "crm.db"))


@pytest.fixture
def crm(store: CRMStore) -> SimpleNamespace:
    return seed_crm(store)


@pytest.fixture
def lock_dir(tmp_path: Path) -> str:
    return str(tmp_path / "locks")


# =============================================================================
# Feature Flag Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_flags():
    """Every test starts and ends with no runtime overrides."""
    flags.clear_all_overrides()
    yield
    flags.clear_all_overrides()


@pytest.fixture
def flag_override():
    """Set runtime overrides: flag_override(business_hours=False, ...)."""
    def _set(**values: bool):
        for name, value in values.items():
            flags.set_override(name, value)
    return _set
