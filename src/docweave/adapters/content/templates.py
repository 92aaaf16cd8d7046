"""Placeholder substitution and the built-in fallback rendering."""

from __future__ import annotations

from datetime import datetime, timezone
from string import Template
from typing import Any, Dict, Mapping, Optional

PLACEHOLDER_TEMPLATE = """# ${title}

## Overview

_This ${doc_type} document is waiting for regeneration. The content source was
unavailable on ${date}; rerun `docweave update` to refresh it._
"""


def template_values(doc_type: str, context: Mapping[str, Any]) -> Dict[str, str]:
    values: Dict[str, str] = {
        "doc_type": doc_type,
        "title": str(context.get("title") or doc_type.replace("-", " ").replace("_", " ").title()),
        "date": datetime.now(timezone.utc).date().isoformat(),
    }
    for key, value in context.items():
        if isinstance(value, (list, tuple)):
            values[str(key)] = ", ".join(str(item) for item in value)
        elif value is not None:
            values[str(key)] = str(value)
    return values


def substitute(template: str, doc_type: str, context: Mapping[str, Any]) -> str:
    return Template(template).safe_substitute(template_values(doc_type, context))


def render_fallback(doc_type: str, context: Mapping[str, Any], template: Optional[str] = None) -> str:
    """Fill ``template`` (or the built-in placeholder) for a document whose source failed."""

    return substitute(template if template is not None else PLACEHOLDER_TEMPLATE, doc_type, context)


__all__ = ["PLACEHOLDER_TEMPLATE", "render_fallback", "substitute", "template_values"]
