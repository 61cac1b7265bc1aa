"""LLM prompt catalog backed by ``prompts/prompts.json``.

Keys are dotted paths into the JSON object (``contact_extraction.user``).
Values are ``string.Template`` texts rendered with ``$name`` placeholders.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


class PromptCatalog:
    def __init__(self, path: Path = PROMPTS_PATH):
        self.path = path
        self._payload: dict[str, Any] | None = None
        self._mtime_ns: int | None = None

    def _payload_on_disk(self) -> dict[str, Any]:
        """Re-read the file only when its mtime changed."""
        mtime_ns = self.path.stat().st_mtime_ns
        if self._payload is None or self._mtime_ns != mtime_ns:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError(f"Prompt catalog must be a JSON object: {self.path}")
            self._payload, self._mtime_ns = payload, mtime_ns
        return self._payload

    def get(self, key: str) -> str:
        node: Any = self._payload_on_disk()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt key not found: {key}")
            node = node[part]
        if not isinstance(node, str):
            raise TypeError(f"Prompt key must map to a string: {key}")
        return node

    def render(self, key: str, **values: Any) -> str:
        template = Template(self.get(key))
        try:
            return template.substitute(values)
        except KeyError as exc:
            raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc

    def clear(self) -> None:
        self._payload = None
        self._mtime_ns = None


catalog = PromptCatalog()


def get_prompt(key: str) -> str:
    return catalog.get(key)


def render_prompt(key: str, **values: Any) -> str:
    return catalog.render(key, **values)


def clear_prompt_cache() -> None:
    catalog.clear()
