"""
Pytest configuration and shared fixtures for DVM tests.

Provides:
- Keypair and identity fixtures
- Mock collaborators (event network, inference, payments)
- Signed sample events (job requests, results, feedback)
- Custom pytest markers for test categorization
"""

import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from nostr_tools import generate_keypair

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from core.events import build_event
from core.identity import DvmIdentity
from core.lightning import Invoice, InvoiceStatus
from core.ollama import InferenceResult, TokenUsage


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


@pytest.fixture(autouse=True)
def clear_key_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment keys out of identity/config defaults."""
    monkeypatch.delenv("DVM_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("LND_MACAROON", raising=False)


# ============================================================================
# Keys and Identity
# ============================================================================


@pytest.fixture
def dvm_keys() -> tuple[str, str]:
    """(private_key, public_key) of the DVM."""
    return generate_keypair()


@pytest.fixture
def requester_keys() -> tuple[str, str]:
    """(private_key, public_key) of a job requester."""
    return generate_keypair()


@pytest.fixture
def identity(dvm_keys: tuple[str, str]) -> DvmIdentity:
    """DVM identity with test relays and pricing."""
    return DvmIdentity(
        private_key=dvm_keys[0],
        relays=["wss://relay.example.com"],
        supported_job_kinds=[5050, 5100],
        text_generation={"min_price_sats": 5, "price_per_1k_tokens": 10.0},
    )


# ============================================================================
# Mock Collaborators
# ============================================================================


@pytest.fixture
def mock_network() -> MagicMock:
    """EventNetwork mock recording published events."""
    network = MagicMock()
    network.published = []

    async def publish(event: dict[str, Any], relays: Optional[list[str]] = None) -> None:
        network.published.append(event)

    subscription = MagicMock()
    subscription.close = AsyncMock()

    network.publish = AsyncMock(side_effect=publish)
    network.list = AsyncMock(return_value=[])
    network.subscribe = AsyncMock(return_value=subscription)
    network.subscription = subscription
    return network


@pytest.fixture
def mock_inference() -> MagicMock:
    """InferenceProvider mock answering with 2500 total tokens."""
    inference = MagicMock()
    inference.complete = AsyncMock(
        return_value=InferenceResult(
            content="Bonjour le monde",
            model="gemma2:1b",
            usage=TokenUsage(prompt_tokens=500, completion_tokens=2000, total_tokens=2500),
        )
    )
    return inference


@pytest.fixture
def mock_payments() -> MagicMock:
    """PaymentProvider mock issuing a fixed invoice."""
    payments = MagicMock()
    payments.create_invoice = AsyncMock(
        return_value=Invoice(
            encoded_invoice="lnbc250n1ptestinvoice",
            payment_hash="f" * 64,
            amount_sats=25,
            memo="NIP-90 Job: test",
            expires_at=1700003600,
        )
    )
    payments.check_invoice_status = AsyncMock(return_value=InvoiceStatus(status="pending"))
    return payments


# ============================================================================
# Sample Events
# ============================================================================


@pytest.fixture
def make_request(requester_keys: tuple[str, str]) -> Callable[..., dict[str, Any]]:
    """Factory for signed job request events from the requester."""

    def _make(
        tags: Optional[list[list[str]]] = None,
        kind: int = 5050,
        content: str = "",
        created_at: int = 1700000000,
    ) -> dict[str, Any]:
        if tags is None:
            tags = [["i", "Translate to French: Hello world", "text"]]
        return build_event(requester_keys[0], kind, tags, content, created_at=created_at)

    return _make


@pytest.fixture
def sample_request(make_request: Callable[..., dict[str, Any]]) -> dict[str, Any]:
    """Plain text generation request."""
    return make_request()


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests requiring live services"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (no external dependencies)"
    )
    config.addinivalue_line("markers", "slow: marks tests as slow running")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
