"""Jinja2 environment for simply_feed prompt templates."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
_ENV: Environment | None = None


def get_environment() -> Environment:
    """Return a cached Jinja environment configured for package templates."""
    global _ENV
    if _ENV is None:
        _ENV = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
    return _ENV


def render_prompt(name: str, **values: Any) -> str:
    """Render the ``<name>.txt.j2`` prompt template."""
    template = get_environment().get_template(f"{name}.txt.j2")
    return template.render(**values).strip()
