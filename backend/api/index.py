import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from backend import chat
from backend.config import Settings, get_settings, resolve_chat_url
from backend.logging_config import configure_logging
from backend.oauth_state import new_state, verify_state
from backend.shaping import chunked, enrich_tracks, unique_artist_ids
from backend.spotify import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    SpotifyAuthError,
    SpotifyError,
    SpotifySession,
    authorize_url,
    exchange_code,
    set_token_cookies,
)

logger = logging.getLogger(__name__)

# roughly what helmet() sets by default
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
}

TIME_RANGES = ("short_term", "medium_term", "long_term")


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Logs each request and rejects bodies over the configured size."""

    def __init__(self, app, max_body_bytes: int):
        super().__init__(app)
        self.max_body_bytes = max_body_bytes

    async def dispatch(self, request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        length = request.headers.get("content-length")
        if length and length.isdigit():
            size = int(length)
        elif "chunked" in request.headers.get("transfer-encoding", "").lower():
            # no declared length; the body is cached for the route after this read
            size = len(await request.body())
        else:
            size = 0
        logger.debug("Body: %s bytes", size)
        if size > self.max_body_bytes:
            return JSONResponse(status_code=413, content={"error": "Request body too large"})
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


def _is_https(request: Request) -> bool:
    return request.url.scheme == "https"


async def get_spotify_session(request: Request) -> AsyncIterator[SpotifySession]:
    """
    FastAPI dependency: a Spotify session bound to this request's cookies.
    The underlying httpx client lives for the duration of the request.
    """
    settings: Settings = request.app.state.settings
    async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
        yield SpotifySession(client, settings, request.cookies, secure=_is_https(request))


def _text_error(spotify: SpotifySession, e: Exception):
    return spotify.apply_cookies(PlainTextResponse(str(e) or "Error", status_code=500))


def _json_error(spotify: SpotifySession, e: Exception):
    return spotify.apply_cookies(JSONResponse(status_code=500, content={"error": str(e) or "failed"}))


async def _proxy(spotify: SpotifySession, path: str, params: Optional[dict] = None):
    try:
        data = await spotify.get(path, params)
    except (SpotifyError, httpx.HTTPError, ValueError) as e:
        if isinstance(e, httpx.HTTPError):
            logger.exception("Spotify request to %s failed", path)
        return _text_error(spotify, e)
    return spotify.apply_cookies(JSONResponse(content=data))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Spotify Insights Relay")
    app.state.settings = settings

    _, is_agent, chat_url = resolve_chat_url(settings.gradient_api_url)
    logger.info("[gradient] URL_CHAT = %s (agent=%s)", chat_url, is_agent)
    logger.info("[gradient] using key = %s", settings.gradient_key_source)

    # the last middleware added runs first; CORS stays outermost so every
    # response, 413 included, carries the CORS headers
    app.add_middleware(RequestLogMiddleware, max_body_bytes=settings.max_body_bytes)
    if settings.is_production:
        app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/hi", response_class=PlainTextResponse)
    def hi():
        return "Hello World!"

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # --- OAuth ---

    @app.get("/auth/login")
    def login(return_to: Optional[str] = None):
        state = new_state(return_to or settings.frontend_origin, settings.session_secret)
        return RedirectResponse(authorize_url(settings, state), status_code=302)

    @app.get("/auth/callback")
    async def callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ):
        if error:
            return PlainTextResponse(f"Spotify returned error: {error}", status_code=400)

        verified = verify_state(state, settings.session_secret)
        if not code or not verified:
            return PlainTextResponse("State mismatch or missing code.", status_code=400)

        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
                tokens = await exchange_code(client, settings, code)
        except (SpotifyAuthError, httpx.HTTPError, ValueError) as e:
            if isinstance(e, httpx.HTTPError):
                logger.exception("Token exchange request failed")
            return PlainTextResponse(f"Token exchange failed: {e}", status_code=500)

        logger.info("[spotify] granted scopes: %s", tokens.get("scope"))

        response = RedirectResponse(verified.rt or "/connected", status_code=302)
        set_token_cookies(response, tokens, secure=_is_https(request))
        return response

    # --- Spotify proxy ---

    @app.get("/spotify/me")
    async def spotify_me(spotify: SpotifySession = Depends(get_spotify_session)):
        return await _proxy(spotify, "/me")

    @app.get("/spotify/top-tracks")
    async def spotify_top_tracks(
        time_range: str = "medium_term",
        limit: str = "50",
        spotify: SpotifySession = Depends(get_spotify_session),
    ):
        return await _proxy(spotify, "/me/top/tracks", {"time_range": time_range, "limit": limit})

    @app.get("/spotify/top-artists")
    async def spotify_top_artists(
        time_range: str = "medium_term",
        limit: str = "50",
        spotify: SpotifySession = Depends(get_spotify_session),
    ):
        return await _proxy(spotify, "/me/top/artists", {"time_range": time_range, "limit": limit})

    @app.get("/spotify/recent")
    async def spotify_recent(
        limit: str = "50",
        before: str = "",
        after: str = "",
        spotify: SpotifySession = Depends(get_spotify_session),
    ):
        params = {"limit": limit}
        if before:
            params["before"] = before
        if after:
            params["after"] = after
        return await _proxy(spotify, "/me/player/recently-played", params)

    @app.get("/enriched/top-tracks")
    async def enriched_top_tracks(
        time_range: str = "medium_term",
        limit: str = "50",
        spotify: SpotifySession = Depends(get_spotify_session),
    ):
        try:
            top = await spotify.get("/me/top/tracks", {"time_range": time_range, "limit": limit})
            tracks = top.get("items") or []

            genres_by_artist = {}
            for batch in chunked(unique_artist_ids(tracks)):
                resp = await spotify.get("/artists", {"ids": ",".join(batch)})
                for artist in resp.get("artists") or []:
                    if artist:
                        genres_by_artist[artist.get("id")] = artist.get("genres") or []
        except (SpotifyError, httpx.HTTPError, ValueError) as e:
            logger.error("Enriching top tracks failed: %s", e)
            return _json_error(spotify, e)

        return spotify.apply_cookies(JSONResponse(content={"items": enrich_tracks(tracks, genres_by_artist)}))

    # --- Debug ---

    @app.get("/debug/topcounts")
    async def debug_topcounts(spotify: SpotifySession = Depends(get_spotify_session)):
        try:
            short_t, med_t, long_t = await asyncio.gather(*[
                spotify.get("/me/top/tracks", {"time_range": time_range, "limit": "50"})
                for time_range in TIME_RANGES
            ])
        except (SpotifyError, httpx.HTTPError, ValueError) as e:
            logger.error("Top counts failed: %s", e)
            return _json_error(spotify, e)

        return spotify.apply_cookies(JSONResponse(content={
            "short": len(short_t.get("items") or []),
            "medium": len(med_t.get("items") or []),
            "long": len(long_t.get("items") or []),
        }))

    @app.get("/debug/tokens")
    def debug_tokens(request: Request):
        return {
            "hasAccess": bool(request.cookies.get(ACCESS_COOKIE)),
            "hasRefresh": bool(request.cookies.get(REFRESH_COOKIE)),
        }

    app.include_router(chat.router)

    return app


app = create_app()
