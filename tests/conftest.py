import pytest

from storefront.storage import InMemoryStorage
from tests.fakes import FakeAPIClient


@pytest.fixture
def api():
    return FakeAPIClient()


@pytest.fixture
def storage():
    return InMemoryStorage()
