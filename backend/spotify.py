import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx
from starlette.responses import Response

from backend.config import ACCESS_COOKIE_MAX_AGE, REFRESH_COOKIE_MAX_AGE, Settings

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
API_BASE = "https://api.spotify.com/v1"

ACCESS_COOKIE = "spotify_access_token"
REFRESH_COOKIE = "spotify_refresh_token"


class SpotifyError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SpotifyAuthError(SpotifyError):
    """The accounts service rejected a code exchange or refresh."""


def authorize_url(settings: Settings, state: str) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.spotify_client_id,
        "scope": settings.spotify_scopes,
        "redirect_uri": settings.spotify_redirect_uri,
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


async def exchange_code(client: httpx.AsyncClient, settings: Settings, code: str) -> Dict[str, Any]:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": settings.spotify_redirect_uri,
    }
    r = await client.post(
        TOKEN_URL,
        data=data,
        auth=(settings.spotify_client_id, settings.spotify_client_secret),
    )
    if not r.is_success:
        logger.warning("Token exchange failed with status %s", r.status_code)
        raise SpotifyAuthError(r.text, r.status_code)
    return r.json()


def set_token_cookies(response: Response, tokens: Mapping[str, Any], secure: bool) -> None:
    """Only the tokens present in `tokens` are written."""
    common = dict(httponly=True, samesite="lax", secure=secure, path="/")
    if tokens.get("access_token"):
        response.set_cookie(ACCESS_COOKIE, tokens["access_token"], max_age=ACCESS_COOKIE_MAX_AGE, **common)
    if tokens.get("refresh_token"):
        response.set_cookie(REFRESH_COOKIE, tokens["refresh_token"], max_age=REFRESH_COOKIE_MAX_AGE, **common)


class SpotifySession:
    """
    Per-request view of the user's Spotify tokens.

    Tokens come from the request cookies. If a call needs a refresh, the new
    tokens are kept on the session so the route can re-cookie them via
    `apply_cookies`, whatever response it ends up sending.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        cookies: Mapping[str, str],
        secure: bool = False,
    ):
        self.client = client
        self.settings = settings
        self.access_token: Optional[str] = cookies.get(ACCESS_COOKIE) or None
        self.refresh_token: Optional[str] = cookies.get(REFRESH_COOKIE) or None
        self.secure = secure
        self.refreshed: Dict[str, str] = {}

    async def refresh_access_token(self) -> Optional[str]:
        if not self.refresh_token:
            return None

        data = {"grant_type": "refresh_token", "refresh_token": self.refresh_token}
        r = await self.client.post(
            TOKEN_URL,
            data=data,
            auth=(self.settings.spotify_client_id, self.settings.spotify_client_secret),
        )
        if not r.is_success:
            logger.warning("Token refresh failed with status %s", r.status_code)
            return None

        new_data = r.json()
        access_token = new_data.get("access_token")
        if access_token:
            self.access_token = access_token
            self.refreshed["access_token"] = access_token
        # Spotify only sometimes rotates the refresh token
        if new_data.get("refresh_token"):
            self.refresh_token = new_data["refresh_token"]
            self.refreshed["refresh_token"] = new_data["refresh_token"]

        logger.info("Token refresh successful.")
        return access_token

    async def _fetch(self, url: str, params: Optional[Mapping[str, Any]]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        return await self.client.get(url, headers=headers, params=params)

    async def get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        url = f"{API_BASE}{path}"

        response = await self._fetch(url, params) if self.access_token else None
        if response is None or response.status_code == 401:
            if not await self.refresh_access_token():
                raise SpotifyError("Unauthorized and refresh failed", 401)
            response = await self._fetch(url, params)

        if not response.is_success:
            logger.warning("Spotify API error on %s: %s", path, response.status_code)
            raise SpotifyError(response.text, response.status_code)
        return response.json()

    def apply_cookies(self, response: Response) -> Response:
        if self.refreshed:
            set_token_cookies(response, self.refreshed, self.secure)
        return response
