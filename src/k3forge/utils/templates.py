# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from k3forge.errors import K3ForgeError

TEMPLATES_ROOT = Path(__file__).resolve().parent.parent / "templates"


class TemplateRenderError(K3ForgeError):
    pass


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_ROOT)),
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_template(name: str, **context: Any) -> str:
    """Render a bundled template (path relative to k3forge/templates)."""
    try:
        tmpl = _env.get_template(name)
    except TemplateNotFound as e:
        raise TemplateRenderError(f"Missing template: {name}") from e
    return tmpl.render(**context)
