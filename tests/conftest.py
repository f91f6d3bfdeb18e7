"""Pytest fixtures for serial2ws tests."""

import pytest

from helpers import FakeSerialFactory, unused_port


@pytest.fixture
def serial_factory():
    return FakeSerialFactory()


@pytest.fixture
def ws_port():
    return unused_port()
