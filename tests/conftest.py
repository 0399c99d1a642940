import os

# backend.api.index builds the module-level app on import
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

import pytest
from fastapi.testclient import TestClient

from backend.api.index import create_app
from backend.config import Settings

SECRET = "test-session-secret"


def make_settings(**overrides) -> Settings:
    values = dict(
        spotify_client_id="client-id",
        spotify_client_secret="client-secret",
        spotify_redirect_uri="http://127.0.0.1:8080/auth/callback",
        session_secret=SECRET,
        gradient_api_url="https://inference.do-ai.run",
        gradient_api_key="gradient-key",
        gradient_key_source="INFERENCE_KEY",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def client(settings):
    return TestClient(create_app(settings))


@pytest.fixture
def authed_client(client):
    client.cookies.set("spotify_access_token", "access-1")
    client.cookies.set("spotify_refresh_token", "refresh-1")
    return client
