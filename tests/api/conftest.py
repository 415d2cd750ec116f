import pytest
from fastapi.testclient import TestClient

from postpurchase.api.server import create_app


@pytest.fixture
def make_client(settings, engine, apple):
    """Build the app against the in-memory datastore and stubbed Apple."""
    clients = []

    def _make(**overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        app = create_app(settings=settings, engine=engine, http_client=apple.client)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()
