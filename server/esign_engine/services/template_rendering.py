"""
Placeholder validation and rendering for contract templates.

Rendering is deliberately literal: every ``{{name}}`` token with a value is
replaced verbatim and any token without one is left in the output untouched,
so a missing value is visible in the rendered document rather than silently
blanked.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from esign_engine.core.errors import FieldViolation
from esign_engine.schemas.template import TemplateVariable, VariableType

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Za-z0-9_.\-]+)\}\}")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")
TRUE_STRINGS = {"true", "yes", "1", "on"}
FALSE_STRINGS = {"false", "no", "0", "off"}


def find_placeholders(content: str) -> list[str]:
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_PATTERN.finditer(content or ""):
        seen.setdefault(match.group(1), None)
    return list(seen)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _label(variable: TemplateVariable) -> str:
    return variable.label or variable.name


def _coerce(variable: TemplateVariable, value: Any) -> tuple[Any, str | None]:
    """Return the coerced value or an error message for this variable type."""
    kind = variable.type
    label = _label(variable)

    if kind in (VariableType.NUMBER, VariableType.CURRENCY):
        if isinstance(value, bool):
            return value, f"{label} must be a number"
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            return value, f"{label} must be a number"
        if not number.is_finite():
            return value, f"{label} must be a number"
        if kind == VariableType.CURRENCY:
            return number.quantize(Decimal("0.01")), None
        return (int(number) if number == number.to_integral_value() else number), None

    if kind == VariableType.EMAIL:
        text = str(value).strip()
        if not EMAIL_PATTERN.match(text):
            return value, f"{label} must be a valid email"
        return text, None

    if kind == VariableType.PHONE:
        text = str(value).strip()
        if not PHONE_PATTERN.match(re.sub(r"[\s\-()]", "", text)):
            return value, f"{label} must be a valid phone number"
        return text, None

    if kind == VariableType.DATE:
        if isinstance(value, datetime):
            return value.date(), None
        if isinstance(value, date):
            return value, None
        text = str(value).strip()
        try:
            return date.fromisoformat(text), None
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text).date(), None
        except ValueError:
            return value, f"{label} must be a valid date (YYYY-MM-DD)"

    if kind == VariableType.BOOLEAN:
        if isinstance(value, bool):
            return value, None
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True, None
        if text in FALSE_STRINGS:
            return False, None
        return value, f"{label} must be true or false"

    if kind == VariableType.SELECT:
        text = str(value)
        if variable.options and text not in variable.options:
            return value, f"{label} must be one of: {', '.join(variable.options)}"
        return text, None

    return str(value), None


def _check_rules(variable: TemplateVariable, raw: Any, coerced: Any) -> list[str]:
    label = _label(variable)
    problems: list[str] = []
    text = str(raw)

    if variable.pattern and not re.search(variable.pattern, text):
        problems.append(f"{label} format is invalid")
    if variable.min_length is not None and len(text) < variable.min_length:
        problems.append(f"{label} must be at least {variable.min_length} characters")
    if variable.max_length is not None and len(text) > variable.max_length:
        problems.append(f"{label} must be no more than {variable.max_length} characters")

    if variable.min is not None or variable.max is not None:
        try:
            number = Decimal(str(coerced))
        except InvalidOperation:
            problems.append(f"{label} must be a number")
            return problems
        if variable.min is not None and number < Decimal(str(variable.min)):
            problems.append(f"{label} must be at least {variable.min:g}")
        if variable.max is not None and number > Decimal(str(variable.max)):
            problems.append(f"{label} must be no more than {variable.max:g}")
    return problems


def validate_placeholder_values(
    variables: Iterable[TemplateVariable],
    values: dict[str, Any],
) -> tuple[dict[str, Any], list[FieldViolation]]:
    """Validate every declared variable and collect all violations.

    Returns the coerced values (defaults applied, undeclared keys passed through)
    together with the complete list of violations.
    """
    resolved: dict[str, Any] = dict(values)
    violations: list[FieldViolation] = []

    for variable in variables:
        raw = values.get(variable.name)
        if _is_blank(raw):
            if not _is_blank(variable.default_value):
                raw = variable.default_value
            elif variable.required:
                violations.append(FieldViolation(variable.name, f"{_label(variable)} is required"))
                continue
            else:
                continue

        coerced, error = _coerce(variable, raw)
        if error:
            violations.append(FieldViolation(variable.name, error))
            continue
        for problem in _check_rules(variable, raw, coerced):
            violations.append(FieldViolation(variable.name, problem))
        resolved[variable.name] = coerced

    return resolved, violations


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def render_content(content: str, values: dict[str, Any]) -> str:
    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values or values[name] is None:
            return match.group(0)
        return format_value(values[name])

    return PLACEHOLDER_PATTERN.sub(substitute, content)


def to_json_values(values: dict[str, Any]) -> dict[str, Any]:
    """Coerced placeholder values in a JSON-storable form."""
    stored: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, (date, datetime)):
            stored[key] = value.isoformat()
        elif isinstance(value, Decimal):
            stored[key] = format(value, "f")
        else:
            stored[key] = value
    return stored
