import os
import re
from functools import lru_cache
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel

DEFAULT_SCOPES = " ".join([
    "user-read-email",
    "user-top-read",
    "user-read-recently-played",
    "playlist-modify-private",
])
DEFAULT_GRADIENT_URL = "https://inference.do-ai.run"
DEFAULT_GRADIENT_MODEL = "meta-llama/llama-3.1-70b-instruct"

ACCESS_COOKIE_MAX_AGE = 60 * 60  # seconds
REFRESH_COOKIE_MAX_AGE = 30 * 24 * 60 * 60
STATE_TTL_MS = 10 * 60 * 1000


class ConfigError(RuntimeError):
    pass


def resolve_chat_url(raw: str) -> Tuple[str, bool, str]:
    """
    Normalizes a Gradient base URL and picks the chat completions path.
    Agent hosts (*.agents.do-ai.run) serve it under /api/v1, the
    serverless inference host under /v1.
    Returns (base, is_agent, chat_url).
    """
    base = re.sub(r"/+$", "", raw.strip())
    base = re.sub(r"/(api|v1)$", "", base)
    host = urlparse(base).hostname or ""
    is_agent = host.endswith(".agents.do-ai.run")
    path = "/api/v1/chat/completions" if is_agent else "/v1/chat/completions"
    return base, is_agent, f"{base}{path}"


class Settings(BaseModel):
    spotify_client_id: str = ""
    spotify_client_secret: str = ""
    spotify_redirect_uri: str = ""
    spotify_scopes: str = DEFAULT_SCOPES
    session_secret: str

    frontend_origin: str = "http://127.0.0.1:4200"
    cors_origins: List[str] = []

    gradient_api_url: str = DEFAULT_GRADIENT_URL
    gradient_api_key: Optional[str] = None
    gradient_key_source: str = "MISSING"
    gradient_model: str = DEFAULT_GRADIENT_MODEL

    app_env: str = "development"
    log_level: str = "INFO"
    port: int = 8080
    http_timeout: float = 30.0
    max_body_bytes: int = 2 * 1024 * 1024

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def chat_url(self) -> str:
        return resolve_chat_url(self.gradient_api_url)[2]

    @property
    def allowed_origins(self) -> List[str]:
        return self.cors_origins or [self.frontend_origin]

    @classmethod
    def from_env(cls) -> "Settings":
        session_secret = os.getenv("SESSION_SECRET")
        if not session_secret:
            raise ConfigError("SESSION_SECRET is required")

        agent_key = os.getenv("DIGITALOCEAN_AGENT_KEY")
        inference_key = os.getenv("DIGITALOCEAN_INFERENCE_KEY")
        if agent_key:
            key, source = agent_key, "AGENT_KEY"
        elif inference_key:
            key, source = inference_key, "INFERENCE_KEY"
        else:
            key, source = None, "MISSING"

        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

        return cls(
            spotify_client_id=os.getenv("SPOTIFY_CLIENT_ID", ""),
            spotify_client_secret=os.getenv("SPOTIFY_CLIENT_SECRET", ""),
            spotify_redirect_uri=os.getenv("SPOTIFY_REDIRECT_URI", ""),
            spotify_scopes=os.getenv("SPOTIFY_SCOPES", DEFAULT_SCOPES),
            session_secret=session_secret,
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://127.0.0.1:4200"),
            cors_origins=origins,
            gradient_api_url=os.getenv("GRADIENT_API_URL") or DEFAULT_GRADIENT_URL,
            gradient_api_key=key,
            gradient_key_source=source,
            gradient_model=os.getenv("GRADIENT_MODEL") or DEFAULT_GRADIENT_MODEL,
            app_env=os.getenv("APP_ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", "8080")),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
            max_body_bytes=int(os.getenv("MAX_BODY_BYTES", str(2 * 1024 * 1024))),
        )


@lru_cache
def get_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()
