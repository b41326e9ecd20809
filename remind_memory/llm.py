"""Minimal chat-completion client for the decision policy and fact extractor.

Supports: Anthropic Messages API, OpenAI Chat Completions.
Calls are plain HTTP through urllib and run in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.request import Request, urlopen

log = logging.getLogger("remind.llm")

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
}


@dataclass
class Completion:
    text: str
    tokens: int = 0


def _load_key(name: str) -> str:
    """Load an API key from env or ~/.env."""
    val = os.environ.get(name, "")
    if val:
        return val
    p = Path.home() / ".env"
    if p.exists():
        try:
            for line in p.read_text().splitlines():
                line = line.strip()
                if line.startswith(f"{name}="):
                    return line.split("=", 1)[1].strip().strip("\"'")
        except OSError:
            log.debug("could not read %s", p)
    return ""


def detect_backend(preferred: str = "") -> tuple[str, str] | None:
    """Return (backend, api_key) for the first backend with a key, or None."""
    order = ["anthropic", "openai"]
    if preferred in order:
        order = [preferred]
    for backend in order:
        key = _load_key(f"{backend.upper()}_API_KEY")
        if key:
            return (backend, key)
    return None


class LLMClient:
    """Blocking HTTP client wrapped for async callers."""

    def __init__(
        self,
        backend: str,
        api_key: str,
        *,
        model: str = "",
        max_tokens: int = 1024,
        timeout: float = 30,
    ):
        if backend not in DEFAULT_MODELS:
            raise ValueError(f"unknown LLM backend: {backend}")
        self.backend = backend
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS[backend]
        self.max_tokens = max_tokens
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "LLMClient | None":
        found = detect_backend(settings.llm_backend)
        if not found:
            log.debug("no LLM API key available")
            return None
        backend, key = found
        return cls(
            backend,
            key,
            model=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout,
        )

    async def complete(self, system: str, user: str) -> Completion:
        return await asyncio.wait_for(
            asyncio.to_thread(self._call, system, user),
            timeout=self.timeout + 5,
        )

    def _call(self, system: str, user: str) -> Completion:
        if self.backend == "anthropic":
            return self._call_anthropic(system, user)
        return self._call_openai(system, user)

    def _call_anthropic(self, system: str, user: str) -> Completion:
        payload = json.dumps({
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }).encode()
        req = Request(
            "https://api.anthropic.com/v1/messages",
            data=payload,
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
            },
        )
        with urlopen(req, timeout=self.timeout) as resp:
            data = json.loads(resp.read())
        text = "".join(
            block.get("text", "") for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage", {})
        return Completion(text, usage.get("input_tokens", 0) + usage.get("output_tokens", 0))

    def _call_openai(self, system: str, user: str) -> Completion:
        payload = json.dumps({
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }).encode()
        req = Request(
            "https://api.openai.com/v1/chat/completions",
            data=payload,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
        )
        with urlopen(req, timeout=self.timeout) as resp:
            data = json.loads(resp.read())
        choices = data.get("choices", [])
        text = choices[0].get("message", {}).get("content", "") if choices else ""
        return Completion(text or "", data.get("usage", {}).get("total_tokens", 0))


def parse_json_block(text: str):
    """Parse JSON from a model reply, tolerating ```json fences around it."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    return json.loads(text)
