"""
Pytest configuration and fixtures for CipherChat tests.

Provides common fixtures and test utilities for unit and integration tests.
Components are wired against MemoryStorage unless a test asks for the
file backend through temp_dir.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from cipherchat.crypto import X25519AesGcmProvider
from cipherchat.delivery import DeliveryStateMachine
from cipherchat.dispatcher import DeliveryPolicy
from cipherchat.identity import IdentityStore
from cipherchat.locks import ChatLocks
from cipherchat.message import Message, MessageStatus, MessageStore, MessageType
from cipherchat.pairing import PeerDescriptor
from cipherchat.session import SessionRegistry
from cipherchat.storage import MemoryStorage
from cipherchat.transport import InMemoryHub


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="cipherchat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def crypto() -> X25519AesGcmProvider:
    return X25519AesGcmProvider()


@pytest.fixture
def locks() -> ChatLocks:
    return ChatLocks()


@pytest.fixture
def message_store(storage, locks) -> MessageStore:
    return MessageStore(storage, locks)


@pytest.fixture
def registry(storage, message_store, locks, crypto) -> SessionRegistry:
    return SessionRegistry(storage, message_store, locks, crypto)


@pytest.fixture
def identity_store(storage, crypto, message_store, registry) -> IdentityStore:
    return IdentityStore(storage, crypto, message_store, registry)


@pytest.fixture
def state_machine(message_store) -> DeliveryStateMachine:
    return DeliveryStateMachine(message_store)


@pytest.fixture
def hub() -> InMemoryHub:
    return InMemoryHub()


@pytest.fixture
def fast_policy() -> DeliveryPolicy:
    """Retry budget small enough for tests to run in milliseconds."""
    return DeliveryPolicy(
        max_send_attempts=3,
        retry_delay=0.001,
        ack_timeout=0.02,
        ack_resend_attempts=1,
    )


@pytest.fixture
def bob_keys(crypto):
    """Key pair for the remote peer "bob-1"."""
    return crypto.generate_key_pair()


@pytest.fixture
def bob(bob_keys) -> PeerDescriptor:
    public_key, _ = bob_keys
    return PeerDescriptor(id="bob-1", name="Bob", key=public_key)


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """
    Factory for Message records.

    Returns:
        Callable building a Message with sensible defaults
    """

    def _make(
        message_id: str,
        chat_id: str = "bob-1",
        timestamp: int = 1_700_000_000_000,
        status: MessageStatus = MessageStatus.PENDING,
        is_me: bool = True,
        content: str = "hello",
    ) -> Message:
        return Message(
            id=message_id,
            chat_id=chat_id,
            sender_id="me" if is_me else chat_id,
            content=content,
            timestamp=timestamp,
            status=status,
            type=MessageType.TEXT,
            is_me=is_me,
        )

    return _make


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to integration test modules
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
