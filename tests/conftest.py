"""
Shared pytest fixtures for KaliSSH tests.

This module provides common fixtures including:
- SubprocessMocker: intercept ssh/sshpass spawns with scripted processes
- Fake model client, orchestrator and remote channel
- Real module instances wired to those fakes
"""

import os
import sys
from unittest.mock import patch

import pytest

# Add project root and test helpers to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import FakeChannel, FakeClock, FakeModelClient, FakeOrchestrator, SubprocessMocker

from kalissh.config.provider import SSHConfig
from kalissh.modules.history import CommandHistory
from kalissh.modules.llm import ModelRegistry
from kalissh.modules.orchestrator import Orchestrator, ResultCache
from kalissh.modules.pipeline import CommandPipeline


# =============================================================================
# Remote execution
# =============================================================================


@pytest.fixture
def ssh_config():
    return SSHConfig(
        host="t-shell",
        user="travis",
        password="s3cret",
        proxy_host="serveo.net",
        connect_timeout=0.5,
        command_timeout=0.5,
        connect_attempts=1,
    )


@pytest.fixture
def subprocess_mocker():
    """
    Patch asyncio.create_subprocess_exec with scripted fake processes.

    Usage:
        async def test_probe(subprocess_mocker, executor):
            subprocess_mocker.queue_probe()
            await executor.connect()
    """
    mocker = SubprocessMocker()
    with patch("asyncio.create_subprocess_exec", new=mocker.create_subprocess_exec):
        yield mocker


@pytest.fixture
def fake_channel():
    return FakeChannel()


# =============================================================================
# Orchestration
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return ModelRegistry()


@pytest.fixture
def model_client():
    return FakeModelClient()


@pytest.fixture
def cache(clock):
    return ResultCache(ttl_seconds=600, max_entries=32, clock=clock)


@pytest.fixture
def orchestrator(model_client, registry, cache):
    return Orchestrator(model_client, registry, cache)


@pytest.fixture
def fake_orchestrator():
    return FakeOrchestrator()


# =============================================================================
# Pipeline
# =============================================================================


@pytest.fixture
def history():
    return CommandHistory()


@pytest.fixture
def pipeline(fake_orchestrator, fake_channel, history):
    return CommandPipeline(fake_orchestrator, fake_channel, history, stream_queue_size=16)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: Tests spanning several modules with only I/O faked"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take a long time to run"
    )
