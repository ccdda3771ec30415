"""
``{{placeholder}}`` templates used by Prompt and Output nodes.

Rendering is strict by default: every placeholder must resolve, and all
missing names are reported together in a single
:class:`~flowstudio.core.errors.UnresolvedPlaceholderError`. A placeholder is
never left in the rendered text as a literal.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowstudio.core.errors import UnresolvedPlaceholderError, UnresolvedReferenceError

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_EMPTY_PLACEHOLDER = re.compile(r"\{\{\s*\}\}")

# Names longer than this are legal but almost always a mistake.
LONG_NAME_LIMIT = 50


def placeholders(template: str) -> tuple[str, ...]:
    """Distinct placeholder names in order of first appearance."""
    names = (m.group(1) for m in PLACEHOLDER_PATTERN.finditer(template))
    return tuple(dict.fromkeys(name for name in names if name))


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


def render(template: str, lookup: Callable[[str], Any], *, strict: bool = True) -> str:
    """
    Substitute every placeholder in ``template`` with ``lookup(name)``.

    Args:
        template: Text containing ``{{name}}`` placeholders.
        lookup: Resolves a name; raises UnresolvedReferenceError when missing.
        strict: When False, missing names render as an empty string.

    Raises:
        UnresolvedPlaceholderError: In strict mode, listing every missing name.
    """
    missing: list[str] = []

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if not name:
            missing.append(name)
            return ""
        try:
            return format_value(lookup(name))
        except UnresolvedReferenceError:
            if name not in missing:
                missing.append(name)
            return ""

    rendered = PLACEHOLDER_PATTERN.sub(substitute, template)
    if missing and strict:
        raise UnresolvedPlaceholderError(missing)
    return rendered


@dataclass(frozen=True)
class TemplateIssue:
    message: str
    is_error: bool = True


def lint_template(template: str) -> list[TemplateIssue]:
    """Static checks on template syntax, without resolving anything."""
    issues: list[TemplateIssue] = []

    if template.count("{") != template.count("}"):
        # Literal text such as code snippets can carry unbalanced braces.
        issues.append(TemplateIssue("Mismatched curly braces in template", is_error=False))

    if _EMPTY_PLACEHOLDER.search(template):
        issues.append(TemplateIssue("Empty placeholder '{{}}': variable names cannot be empty"))

    stripped = PLACEHOLDER_PATTERN.sub("", template)
    if re.search(r"\{[^{}]*\}", stripped):
        # Single braces are legal text (JSON examples in prompts), so only warn.
        issues.append(
            TemplateIssue(
                "Possible incomplete placeholder: variables must be wrapped in double braces, e.g. {{name}}",
                is_error=False,
            )
        )

    long_names = [name for name in placeholders(template) if len(name) > LONG_NAME_LIMIT]
    if long_names:
        issues.append(
            TemplateIssue(
                f"Very long placeholder names (>{LONG_NAME_LIMIT} characters): {', '.join(long_names)}",
                is_error=False,
            )
        )

    return issues


__all__ = [
    "PLACEHOLDER_PATTERN",
    "placeholders",
    "format_value",
    "render",
    "TemplateIssue",
    "lint_template",
]
