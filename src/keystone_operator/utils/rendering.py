"""Configuration rendering.

Provides the Jinja environment used to render keystone-api configuration
files and client configuration, plus the content hash used to detect
changes in rendered inputs.
"""

import hashlib
import json
from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined

__all__ = ["render", "content_hash"]

environment = Environment(
    loader=PackageLoader("keystone_operator", package_path="templates"),
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)
"""Environment for configuration files; these are not HTML, so no escaping."""


def render(template_name: str, **context: Any) -> str:
    """Render one template from the package ``templates`` directory."""
    return environment.get_template(template_name).render(**context)


def content_hash(*parts: Any) -> str:
    """
    Stable SHA-256 over JSON-serializable parts.

    Dict keys are sorted so two equal inputs always hash the same regardless
    of construction order.
    """
    digest = hashlib.sha256()
    for part in parts:
        digest.update(json.dumps(part, sort_keys=True, default=str).encode())
    return digest.hexdigest()
