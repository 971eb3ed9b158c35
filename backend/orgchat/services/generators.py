"""
Adapters to the inference backends that produce assistant text.

The chat core only sees ``ResponseGenerator.stream``: an iterator of text
deltas and, optionally, the sources the answer cites.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Protocol, Sequence, Union

import requests

from orgchat.core.config import settings
from orgchat.schemas.chat import MessageSource, UIMessage
from orgchat.services.message_codec import extract_text

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You answer questions about the organization's documents.\n"
    "If the answer is not present in the conversation or documents, say you don't know."
)


@dataclass
class TextDelta:
    text: str


@dataclass
class SourcesFound:
    sources: List[MessageSource] = field(default_factory=list)


StreamChunk = Union[TextDelta, SourcesFound]


class ResponseGenerator(Protocol):
    def stream(self, history: Sequence[UIMessage]) -> Iterator[StreamChunk]:
        ...


def _to_chat_messages(history: Sequence[UIMessage]) -> List[Dict[str, Any]]:
    out = [{"role": "system", "content": SYSTEM_PROMPT}]
    for m in history:
        text = extract_text(m.parts)
        if text.strip():
            out.append({"role": m.role, "content": text})
    return out


class OpenAIGenerator:
    def __init__(self, api_key: str, model: str = None):
        from openai import OpenAI

        self.client = OpenAI(api_key=api_key)
        self.model = model or settings.OPENAI_MODEL

    def stream(self, history: Sequence[UIMessage]) -> Iterator[StreamChunk]:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=_to_chat_messages(history),
            temperature=0.2,
            stream=True,
        )
        for chunk in resp:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield TextDelta(delta)


class OllamaGenerator:
    def __init__(self, base_url: str = None, model: str = None, timeout: float = None):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_MODEL
        self.timeout = timeout or settings.GENERATOR_TIMEOUT

    def stream(self, history: Sequence[UIMessage]) -> Iterator[StreamChunk]:
        payload = {
            "model": self.model,
            "messages": _to_chat_messages(history),
            "options": {"temperature": 0.2},
            "stream": True,
        }
        with requests.post(f"{self.base_url}/api/chat", json=payload, stream=True, timeout=self.timeout) as r:
            r.raise_for_status()
            for line in r.iter_lines():
                if not line:
                    continue
                data = json.loads(line)
                content = (data.get("message", {}) or {}).get("content", "")
                if content:
                    yield TextDelta(content)
                if data.get("done"):
                    break


def get_generator() -> ResponseGenerator:
    if settings.OPENAI_API_KEY:
        return OpenAIGenerator(settings.OPENAI_API_KEY)
    return OllamaGenerator()
