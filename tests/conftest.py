"""Pytest fixtures for portscope tests."""

import pytest

from portscope.config import Settings


def pytest_configure(config):
    """Register the asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, hypervisor_api_key=None, docker_host=None, include_udp=False)
