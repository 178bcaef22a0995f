import pytest
import requests
from fastapi.testclient import TestClient

from oap import KeyResolver
from oap.server import create_app

from tests.factories import REGISTRY_ISSUER, make_registry_key


def offline_fetch(url, timeout):
    raise requests.ConnectionError(f"offline: {url}")


@pytest.fixture
def registry_key():
    return make_registry_key()


@pytest.fixture
def app(registry_key):
    resolver = KeyResolver(registry_base_url=REGISTRY_ISSUER, fetch_json=offline_fetch, retries=0)
    return create_app(registry_key, resolver=resolver)


@pytest.fixture
def client(app):
    return TestClient(app)
