"""Placeholder substitution for step input templates."""

from __future__ import annotations

import re
from typing import Mapping

PLACEHOLDER_RE = re.compile(r"\{\{([^{}\s]+)\}\}")


def resolve_template(template: str, context: Mapping[str, str]) -> str:
    """Replace every ``{{key}}`` in ``template`` with ``context[key]``.

    Unknown keys are rendered as ``[missing: key]`` so that gaps stay visible
    in the text handed to an agent. Substituted values are not rescanned.
    A key is any run of characters other than braces and whitespace, so
    ``{{repo-url}}`` and ``{{repo.url}}`` resolve like ``{{repo_url}}``.
    """

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in context:
            return context[key]
        return f"[missing: {key}]"

    return PLACEHOLDER_RE.sub(_substitute, template)


def template_keys(template: str) -> list[str]:
    """Return the distinct placeholder keys of ``template`` in first-seen order."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)
