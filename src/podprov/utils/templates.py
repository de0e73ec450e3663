"""Template rendering utilities."""

import logging
from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError


logger = logging.getLogger(__name__)

_env = Environment(
    loader=PackageLoader("podprov", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_template(name: str, **context: Any) -> str:
    """Render a packaged Jinja2 template with given context."""
    try:
        return _env.get_template(name).render(**context)
    except TemplateError as e:
        logger.error(f"Template rendering error in {name}: {e}")
        raise
