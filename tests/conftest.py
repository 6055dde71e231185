"""pytest configuration for Orion Fleet tests."""

import pytest

from orion_fleet.ssh.transport import Credential
from fakes import CountingTransport


@pytest.fixture
def credential():
    return Credential(host="jetson-1.local", username="nvidia", password="nvidia")


@pytest.fixture
def transport():
    return CountingTransport()
