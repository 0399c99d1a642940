import json
import logging
from typing import Any, Tuple

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from backend.config import Settings
from backend.shaping import compact_snapshot

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a friendly music analyst. Use ONLY the JSON snapshot provided."
PING_PROMPT = "Say 'pong' only."


class ChatUpstreamError(Exception):
    def __init__(self, status_code: int, text: str):
        super().__init__(text)
        self.status_code = status_code
        self.text = text


class ChatBody(BaseModel):
    question: Any = None
    snapshot: Any = None


def is_blank(value: Any) -> bool:
    """Falsy in the JSON sense: null, false, 0 or "". Empty objects and arrays count as given."""
    if value is None or value is False or value == "":
        return True
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0


def extract_answer(data: Any) -> Any:
    """choices[0].message.content, or "" when any step of that path is missing."""
    choices = data.get("choices") if isinstance(data, dict) else None
    first = choices[0] if isinstance(choices, list) and choices else None
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return "" if content is None else content


def build_user_prompt(question: Any, snapshot: Any) -> str:
    slim = json.dumps(compact_snapshot(snapshot), separators=(",", ":"), ensure_ascii=False)
    return f"SNAPSHOT:\n```json\n{slim}\n```\nQUESTION: {question}"


class GradientClient:
    """Thin client for the Gradient chat completions endpoint."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.gradient_api_key}",
            "Content-Type": "application/json",
        }

    async def ping(self) -> Tuple[int, str]:
        payload = {
            "messages": [{"role": "user", "content": PING_PROMPT}],
            "temperature": 0,
        }
        r = await self.client.post(self.settings.chat_url, headers=self._headers(), json=payload)
        return r.status_code, r.text

    async def ask(self, question: Any, snapshot: Any) -> Any:
        payload = {
            # agents ignore `model`, the inference host needs it
            "model": self.settings.gradient_model,
            "temperature": 0.2,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(question, snapshot)},
            ],
        }
        r = await self.client.post(self.settings.chat_url, headers=self._headers(), json=payload)
        if not r.is_success:
            logger.warning("Gradient returned %s", r.status_code)
            raise ChatUpstreamError(r.status_code, r.text)

        return extract_answer(r.json())


def _settings(request: Request) -> Settings:
    return request.app.state.settings


router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/test")
async def chat_test(request: Request):
    settings = _settings(request)
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout) as http_client:
            status_code, text = await GradientClient(settings, http_client).ping()
    except httpx.HTTPError as e:
        logger.exception("Gradient ping failed")
        return JSONResponse(status_code=500, content={"error": str(e) or "test failed"})
    return Response(content=text, status_code=status_code, media_type="application/json")


@router.post("")
async def chat(request: Request):
    raw = await request.body()
    try:
        data = json.loads(raw) if raw.strip() else {}
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    body = ChatBody.model_validate(data if isinstance(data, dict) else {})
    if is_blank(body.question) or is_blank(body.snapshot):
        return JSONResponse(status_code=400, content={"error": "Missing question or snapshot"})

    settings = _settings(request)
    if not settings.gradient_api_key:
        return JSONResponse(
            status_code=500,
            content={"error": "Missing DIGITALOCEAN_AGENT_KEY (or INFERENCE_KEY)"},
        )

    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout) as http_client:
            answer = await GradientClient(settings, http_client).ask(body.question, body.snapshot)
    except ChatUpstreamError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.text})
    except Exception as e:
        logger.exception(f"Chat request failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e) or "chat failed"})
    return {"answer": answer}
