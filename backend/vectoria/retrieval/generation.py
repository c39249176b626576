"""Generation backends for question answering."""

from __future__ import annotations

import logging
import re
from typing import Iterator, Protocol

import orjson
import requests

from vectoria.core.control import CancellationToken

logger = logging.getLogger(__name__)

_PASSAGE_RE = re.compile(r"^\s*»\s*(.+)$", re.MULTILINE)
_DOC_ITEM_RE = re.compile(r"^\[Doc \d+\]\s+(.+)$", re.MULTILINE)
_STREAM_TOKEN_RE = re.compile(r"\S+\s*")


class GenerationBackend(Protocol):
    """Protocol describing generation behaviour."""

    name: str

    def generate(self, prompt: str, *, system: str = "", temperature: float = 0.5, max_tokens: int = 1024) -> str:
        ...

    def stream(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float = 0.5,
        max_tokens: int = 1024,
        cancel: CancellationToken | None = None,
    ) -> Iterator[str]:
        ...


class TemplateGenerator:
    """Deterministic generator used for tests and offline environments."""

    name = "template"

    def generate(self, prompt: str, *, system: str = "", temperature: float = 0.5, max_tokens: int = 1024) -> str:
        passages = _PASSAGE_RE.findall(prompt) or _DOC_ITEM_RE.findall(prompt)
        if not passages:
            return "I do not have enough relevant context to answer that question."
        summary = passages[0].strip()
        words = summary.split()
        if len(words) > max_tokens:
            summary = " ".join(words[:max_tokens])
        return f"Based on the provided documents [Doc 1]: {summary}"

    def stream(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float = 0.5,
        max_tokens: int = 1024,
        cancel: CancellationToken | None = None,
    ) -> Iterator[str]:
        text = self.generate(prompt, system=system, temperature=temperature, max_tokens=max_tokens)
        for match in _STREAM_TOKEN_RE.finditer(text):
            if cancel is not None and cancel.cancelled:
                return
            yield match.group(0)


class OllamaGenerator:
    """Generator backed by an Ollama server's ``/api/generate`` endpoint."""

    def __init__(self, model: str, host: str = "http://127.0.0.1:11434", timeout: float = 120.0) -> None:
        self.name = f"ollama:{model}"
        self.model = model
        self.host = host.rstrip("/")
        self.timeout = timeout

    def _payload(self, prompt: str, system: str, temperature: float, max_tokens: int, stream: bool) -> dict:
        return {
            "model": self.model,
            "prompt": prompt,
            "system": system,
            "stream": stream,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }

    def generate(self, prompt: str, *, system: str = "", temperature: float = 0.5, max_tokens: int = 1024) -> str:
        response = requests.post(
            f"{self.host}/api/generate",
            json=self._payload(prompt, system, temperature, max_tokens, stream=False),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return str(response.json().get("response", ""))

    def stream(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float = 0.5,
        max_tokens: int = 1024,
        cancel: CancellationToken | None = None,
    ) -> Iterator[str]:
        with requests.post(
            f"{self.host}/api/generate",
            json=self._payload(prompt, system, temperature, max_tokens, stream=True),
            timeout=self.timeout,
            stream=True,
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if cancel is not None and cancel.cancelled:
                    logger.info("Generation stream cancelled")
                    return
                if not line:
                    continue
                event = orjson.loads(line)
                token = event.get("response")
                if token:
                    yield token
                if event.get("done"):
                    return


def build_generator(settings) -> GenerationBackend:
    if settings.generation_backend == "ollama":
        return OllamaGenerator(settings.generation_model, host=settings.generation_host)
    return TemplateGenerator()


def clamp_generation_params(temperature: float, max_tokens: int, limit: int) -> tuple[float, int]:
    """Clamp temperature to [0, 2] and max tokens to [1, limit]."""
    return min(2.0, max(0.0, float(temperature))), min(limit, max(1, int(max_tokens)))


__all__ = [
    "GenerationBackend",
    "TemplateGenerator",
    "OllamaGenerator",
    "build_generator",
    "clamp_generation_params",
]
