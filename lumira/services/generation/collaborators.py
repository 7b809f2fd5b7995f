"""Contracts of the external collaborators used by the generation pipeline.

Production adapters: OpenAI chat completions (AI model), WeasyPrint (HTML to
PDF rendering) and an HTTP object store reached with httpx.
"""

import asyncio
import html
import json
from typing import Any, Protocol

import httpx
from openai import OpenAI

from lumira.common.config import settings
from lumira.common.logging import logger


class Oracle(Protocol):
    async def generate(self, profile: dict[str, Any], order_context: dict[str, Any]) -> dict[str, Any]: ...


class Renderer(Protocol):
    async def render(self, template_name: str, data: dict[str, Any]) -> bytes: ...


class Storage(Protocol):
    async def upload(self, data: bytes, key: str) -> str: ...


class Notifier(Protocol):
    async def send(self, to: str, template: str, context: dict[str, Any]) -> None: ...


ORACLE_SYSTEM_PROMPT = """You are an oracle writing a personalized spiritual reading.
Answer with one JSON object with exactly these keys:
- "pdf_content": {"introduction", "archetype_reveal", "sections": [{"domain", "title", "content"}],
  "karmic_insights": [str], "life_mission", "rituals": [{"name", "description", "instructions": [str]}],
  "conclusion"}
- "synthesis": {"archetype", "keywords": [str], "emotional_state", "key_blockage"}
- "timeline": seven items {"day", "title", "action", "mantra", "actionType"} where actionType is one of
  MANTRA, RITUAL, JOURNALING, MEDITATION, REFLECTION.
Write in the client's language (French by default)."""


class OpenAIOracle:
    """AI-model collaborator backed by OpenAI chat completions in JSON mode."""

    def __init__(self, api_key: str | None = None, model: str | None = None, client: OpenAI | None = None) -> None:
        self.model = model or settings.openai_model
        self._api_key = settings.openai_api_key if api_key is None else api_key
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self._api_key:
                raise RuntimeError("OPENAI_API_KEY is not configured")
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def _complete(self, profile: dict[str, Any], order_context: dict[str, Any]) -> dict[str, Any]:
        user_prompt = (
            f"CLIENT PROFILE:\n{json.dumps(profile, ensure_ascii=False, default=str)}\n\n"
            f"ORDER:\n{json.dumps(order_context, ensure_ascii=False, default=str)}"
        )
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": ORACLE_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.8,
        )
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ValueError("empty response from model")
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("model response is not a JSON object")
        return parsed

    async def generate(self, profile: dict[str, Any], order_context: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._complete, profile, order_context)


READING_CSS = """
@page { size: A4; margin: 2cm; }
body { font-family: Georgia, serif; color: #1f1b2e; line-height: 1.55; }
h1 { color: #6b4fa3; text-align: center; }
h2 { color: #6b4fa3; border-bottom: 1px solid #d8cdee; padding-bottom: 4px; }
.meta { text-align: center; color: #7a7290; font-size: 0.9em; }
"""


def esc(value: Any) -> str:
    return html.escape(str(value or ""))


def build_reading_html(data: dict[str, Any]) -> str:
    """HTML document for the `reading` template, every value escaped."""

    parts = [
        "<html><head><meta charset='utf-8'>",
        f"<style>{READING_CSS}</style></head><body>",
        f"<h1>{esc(data.get('archetype'))}</h1>",
        f"<p class='meta'>{esc(data.get('user_name'))} &middot; {esc(data.get('order_number'))}</p>",
        f"<p>{esc(data.get('introduction'))}</p>",
        f"<h2>{esc(data.get('archetype'))}</h2><p>{esc(data.get('archetype_reveal'))}</p>",
    ]
    for section in data.get("sections", []):
        parts.append(f"<h2>{esc(section.get('title'))}</h2><p>{esc(section.get('content'))}</p>")
    if data.get("karmic_insights"):
        parts.append("<h2>Karmic insights</h2><ul>")
        parts.extend(f"<li>{esc(item)}</li>" for item in data["karmic_insights"])
        parts.append("</ul>")
    if data.get("life_mission"):
        parts.append(f"<h2>Life mission</h2><p>{esc(data['life_mission'])}</p>")
    for ritual in data.get("rituals", []):
        parts.append(f"<h2>{esc(ritual.get('name'))}</h2><p>{esc(ritual.get('description'))}</p><ol>")
        parts.extend(f"<li>{esc(step)}</li>" for step in ritual.get("instructions", []))
        parts.append("</ol>")
    if data.get("conclusion"):
        parts.append(f"<p>{esc(data['conclusion'])}</p>")
    parts.append(f"<p class='meta'>{esc(data.get('generated_at'))}</p></body></html>")
    return "".join(parts)


TEMPLATES = {"reading": build_reading_html}


class WeasyPrintRenderer:
    """Rendering collaborator producing PDF bytes from an HTML template."""

    def __init__(self, base_url: str | None = None) -> None:
        self.base_url = base_url

    def _render_sync(self, template_name: str, data: dict[str, Any]) -> bytes:
        try:
            build = TEMPLATES[template_name]
        except KeyError as exc:
            raise ValueError(f"unknown document template {template_name}") from exc
        from weasyprint import HTML  # heavy native import, loaded on first render

        return HTML(string=build(data), base_url=self.base_url).write_pdf()

    async def render(self, template_name: str, data: dict[str, Any]) -> bytes:
        return await asyncio.to_thread(self._render_sync, template_name, data)


class HttpObjectStorage:
    """Storage collaborator: PUT bytes to `<base_url>/<key>` and return the public URL."""

    def __init__(
        self,
        base_url: str | None = None,
        public_url: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.base_url = (settings.storage_base_url if base_url is None else base_url).rstrip("/")
        self.public_url = (settings.storage_public_url if public_url is None else public_url).rstrip("/")
        self.token = settings.storage_token if token is None else token
        self.transport = transport
        self.timeout_seconds = timeout_seconds

    async def upload(self, data: bytes, key: str) -> str:
        if not self.base_url:
            raise RuntimeError("STORAGE_BASE_URL is not configured")
        headers = {"Content-Type": "application/pdf"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            resp = await client.put(f"{self.base_url}/{key}", content=data, headers=headers)
        resp.raise_for_status()
        logger.info("artifact_uploaded key=%s size_bytes=%s", key, len(data))
        return f"{self.public_url or self.base_url}/{key}"
