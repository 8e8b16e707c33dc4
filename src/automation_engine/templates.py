from __future__ import annotations

import re
from typing import Any, Callable, Mapping

from src.automation_engine.errors import ExecutionError
from src.automation_engine.models import Contact


_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")

_FORMATS: dict[str, Callable[[str], str]] = {
    "upper": str.upper,
    "lower": str.lower,
    "title": str.title,
}


class InlineTemplateRenderer:
    """Renders ``{{variable}}`` placeholders against a contact.

    ``template`` is either inline text or a stored template id resolved
    through ``template_lookup``.
    """

    def __init__(
        self,
        template_lookup: Callable[[int], str | None] | None = None,
        default_name: str = "Cliente",
    ) -> None:
        self._template_lookup = template_lookup
        self._default_name = default_name

    def render(
        self,
        template: str | int,
        contact: Contact,
        variables: Mapping[str, Any] | None = None,
    ) -> str:
        text = self._resolve(template)
        scope = self._build_scope(contact, variables or {})

        def substitute(match: re.Match) -> str:
            expression = match.group(1).strip()
            name, _, fmt = expression.partition("|")
            value = _lookup(scope, name.strip())
            if value is None:
                return match.group(0)
            rendered = str(value)
            formatter = _FORMATS.get(fmt.strip().lower())
            return formatter(rendered) if formatter else rendered

        return _PLACEHOLDER_RE.sub(substitute, text)

    def _resolve(self, template: str | int) -> str:
        if isinstance(template, int) and not isinstance(template, bool):
            if self._template_lookup is None:
                raise ExecutionError(f"template {template} cannot be resolved")
            text = self._template_lookup(template)
            if text is None:
                raise ExecutionError(f"template {template} not found")
            return text
        return str(template or "")

    def _build_scope(
        self, contact: Contact, variables: Mapping[str, Any]
    ) -> dict[str, Any]:
        name = contact.name or self._default_name
        scope: dict[str, Any] = {
            "name": name,
            "first_name": name.split()[0] if name.strip() else self._default_name,
            "phone": contact.phone,
            "email": contact.email or "",
            "custom_fields": dict(contact.custom_fields),
        }
        scope.update(contact.custom_fields)
        scope.update(variables)
        return scope


def _lookup(scope: Mapping[str, Any], name: str) -> Any:
    if name in scope:
        return scope[name]
    if "." not in name:
        return None
    current: Any = scope
    for part in name.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current
