"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from account_operator.config import OperatorSettings  # noqa: E402
from account_operator.store import InMemoryStore  # noqa: E402
from aws_mock import MockAwsState  # noqa: E402


@pytest.fixture
def aws_state() -> MockAwsState:
    """Empty provider state with the default managed policy catalog."""
    return MockAwsState()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def settings() -> OperatorSettings:
    return OperatorSettings(root_ou_id="ou-pool", shard_name="hive-1")


@pytest.fixture(autouse=True)
def operator_debug_logging() -> Iterator[None]:
    """Enable every operator log call so structured ``extra`` fields are built."""
    logger = logging.getLogger("account_operator")
    previous = logger.level
    logger.setLevel(logging.DEBUG)
    yield
    logger.setLevel(previous)
