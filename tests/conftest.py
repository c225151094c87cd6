import pytest

from capwire.registry import CapabilityRegistry
from capwire.resolver import Resolver


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
def resolver() -> Resolver:
    return Resolver()
