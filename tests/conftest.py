import pytest
from fastapi.testclient import TestClient

from device_store import AuthorizationStore
from license_server import create_app

ADMIN_TOKEN = "admin_test_token_0123456789"


@pytest.fixture()
def store_path(tmp_path):
    return tmp_path / "server.json"


@pytest.fixture()
def store(store_path):
    return AuthorizationStore.open(store_path, admin_token=ADMIN_TOKEN)


@pytest.fixture()
def client(store):
    with TestClient(create_app(store)) as c:
        yield c


@pytest.fixture()
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
