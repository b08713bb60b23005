"""Commit message rendering.

Templates are Jinja2 with strict undefined handling, rendered against::

    {"AutomationObject": {"Name": ..., "Namespace": ...},
     "Updated": {"Files": ..., "Objects": ..., "Images": [...]}}

so ``{{ AutomationObject.Name }}`` or ``{% for image in Updated.Images %}``
work as expected. A template that does not parse, or that looks up something
missing, fails the run.
"""

from __future__ import annotations

from typing import Optional

from jinja2 import Environment, StrictUndefined, TemplateError, TemplateSyntaxError

from .errors import MessageTemplateError
from .models import NamespacedName, UpdateResult


_env = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


def template_context(automation: NamespacedName, updated: Optional[UpdateResult]) -> dict:
    return {
        "AutomationObject": {"Name": automation.name, "Namespace": automation.namespace},
        "Updated": (updated or UpdateResult(files={})).template_view(),
    }


def render_commit_message(
    template: str,
    automation: NamespacedName,
    updated: Optional[UpdateResult],
) -> str:
    """Render ``template`` for one run.

    Raises:
        MessageTemplateError: If the template cannot be parsed or executed
    """
    try:
        compiled = _env.from_string(template)
    except TemplateSyntaxError as e:
        raise MessageTemplateError(
            f"unable to create commit message template from spec: {e}"
        ) from e
    try:
        return compiled.render(template_context(automation, updated))
    except (TemplateError, TypeError) as e:
        raise MessageTemplateError(f"failed to run template from spec: {e}") from e
