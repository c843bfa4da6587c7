"""
Tests for placeholder validation and rendering.
"""

from datetime import date
from decimal import Decimal

from esign_engine.schemas.template import TemplateVariable, VariableType
from esign_engine.services.template_rendering import (
    find_placeholders,
    render_content,
    to_json_values,
    validate_placeholder_values,
)


class TestFindPlaceholders:
    def test_returns_names_in_first_seen_order(self):
        content = "{{b}} then {{a}} then {{b}} again and {{client.name}}"
        assert find_placeholders(content) == ["b", "a", "client.name"]

    def test_ignores_malformed_tokens(self):
        assert find_placeholders("{{ spaced }} {single} {{}}") == []


class TestValidatePlaceholderValues:
    def test_collects_every_violation(self):
        variables = [
            TemplateVariable(name="company", label="Company", required=True),
            TemplateVariable(name="fee", label="Fee", type=VariableType.CURRENCY, required=True, min=100),
            TemplateVariable(name="contact", label="Contact", type=VariableType.EMAIL),
        ]

        _, violations = validate_placeholder_values(variables, {"fee": "50", "contact": "not-an-email"})

        messages = {violation.field: violation.message for violation in violations}
        assert messages == {
            "company": "Company is required",
            "fee": "Fee must be at least 100",
            "contact": "Contact must be a valid email",
        }

    def test_applies_defaults_and_coerces_types(self):
        variables = [
            TemplateVariable(name="fee", type=VariableType.CURRENCY, required=True),
            TemplateVariable(name="seats", type=VariableType.NUMBER),
            TemplateVariable(name="start", type=VariableType.DATE),
            TemplateVariable(name="renew", type=VariableType.BOOLEAN, default_value="yes"),
        ]

        values, violations = validate_placeholder_values(
            variables, {"fee": "1500", "seats": "12", "start": "2026-04-01", "extra": "kept"}
        )

        assert violations == []
        assert values["fee"] == Decimal("1500.00")
        assert values["seats"] == 12
        assert values["start"] == date(2026, 4, 1)
        assert values["renew"] is True
        assert values["extra"] == "kept"

    def test_select_restricted_to_options(self):
        variables = [TemplateVariable(name="tier", label="Tier", type=VariableType.SELECT, options=["gold", "silver"])]

        _, violations = validate_placeholder_values(variables, {"tier": "bronze"})

        assert [violation.message for violation in violations] == ["Tier must be one of: gold, silver"]

    def test_length_and_pattern_rules(self):
        variables = [
            TemplateVariable(name="code", label="Code", pattern=r"^[A-Z]{3}$", min_length=3, max_length=3),
        ]

        _, violations = validate_placeholder_values(variables, {"code": "abcd"})

        assert [violation.message for violation in violations] == [
            "Code format is invalid",
            "Code must be no more than 3 characters",
        ]

    def test_optional_blank_value_is_skipped(self):
        variables = [TemplateVariable(name="note", type=VariableType.TEXT)]

        values, violations = validate_placeholder_values(variables, {"note": "   "})

        assert violations == []
        assert values["note"] == "   "


class TestRenderContent:
    def test_replaces_known_tokens_and_keeps_missing_ones(self):
        rendered = render_content(
            "Dear {{name}}, you owe {{amount}}. Ref {{missing}}.",
            {"name": "Ada", "amount": Decimal("10.50")},
        )
        assert rendered == "Dear Ada, you owe 10.50. Ref {{missing}}."

    def test_formats_booleans_and_dates(self):
        rendered = render_content("{{flag}} on {{day}}", {"flag": False, "day": date(2026, 1, 2)})
        assert rendered == "No on 2026-01-02"

    def test_json_values_are_storable(self):
        stored = to_json_values({"fee": Decimal("5.00"), "day": date(2026, 1, 2), "n": 3})
        assert stored == {"fee": "5.00", "day": "2026-01-02", "n": 3}
