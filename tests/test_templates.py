"""
Tests for the Template Engine.

These tests verify:
1. Simple and nested placeholder substitution
2. Missing placeholders are left visible
3. Variable validation against a template's declared set
4. The built-in form reminder email
"""

from datetime import datetime, timezone

from comms_engine.services.templates import (
    TemplateEngine,
    TemplateVariable,
    build_form_reminder_email,
)


# =============================================================================
# TEST: SUBSTITUTION
# =============================================================================


class TestSubstituteVariables:

    def test_replaces_simple_placeholders(self):
        result = TemplateEngine.substitute_variables(
            "Hello {{name}}, you have {{count}} messages",
            {"name": "Ada", "count": 3},
        )
        assert result == "Hello Ada, you have 3 messages"

    def test_replaces_nested_placeholders(self):
        result = TemplateEngine.substitute_variables(
            "Welcome to {{school.name}} in {{school.city}}",
            {"school": {"name": "North College", "city": "Leeds"}},
        )
        assert result == "Welcome to North College in Leeds"

    def test_missing_variable_is_left_in_place(self):
        result = TemplateEngine.substitute_variables("Hi {{name}} from {{org.name}}", {})
        assert result == "Hi {{name}} from {{org.name}}"

    def test_extract_variables_in_first_seen_order(self):
        names = TemplateEngine.extract_variables("{{b}} {{a}} {{b}} {{user.email}}")
        assert names == ["b", "a", "user.email"]


# =============================================================================
# TEST: VALIDATION
# =============================================================================


class TestValidateVariables:

    def test_missing_required_variable(self):
        schema = [TemplateVariable(name="name", required=True)]
        errors = TemplateEngine.validate_variables({}, schema)
        assert errors == ["Required variable 'name' is missing"]

    def test_required_variable_set_to_none_is_missing(self):
        schema = [TemplateVariable(name="name", required=True)]
        errors = TemplateEngine.validate_variables({"name": None}, schema)
        assert errors == ["Required variable 'name' is missing"]

    def test_missing_optional_variable_is_fine(self):
        schema = [TemplateVariable(name="nickname", required=False)]
        assert TemplateEngine.validate_variables({}, schema) == []
        assert TemplateEngine.validate_variables({"nickname": None}, schema) == []

    def test_type_mismatch(self):
        schema = [TemplateVariable(name="count", type="number", required=True)]
        errors = TemplateEngine.validate_variables({"count": "three"}, schema)
        assert errors == ["Variable 'count' type mismatch: expected number, got string"]

    def test_boolean_is_not_a_number(self):
        schema = [TemplateVariable(name="count", type="number")]
        assert TemplateEngine.validate_variables({"count": True}, schema) != []

    def test_iso_string_counts_as_date(self):
        schema = [TemplateVariable(name="due", type="date")]
        assert TemplateEngine.validate_variables({"due": "2024-05-01"}, schema) == []
        assert TemplateEngine.validate_variables({"due": "next week"}, schema) != []

    def test_from_dict_defaults(self):
        variable = TemplateVariable.from_dict({"name": "x"})
        assert variable.type == "string"
        assert variable.required is False


# =============================================================================
# TEST: FORM REMINDER EMAIL
# =============================================================================


class TestFormReminderEmail:

    def test_subject_and_link(self):
        email = build_form_reminder_email(
            contact_name="Sam",
            institution_name="North College",
            form_title="Enrollment Form",
            form_url="https://app.example.com/student/form/abc",
        )
        assert email.subject == "Reminder: Complete Your Application - North College"
        assert "https://app.example.com/student/form/abc" in email.html
        assert "https://app.example.com/student/form/abc" in email.text
        assert "Deadline" not in email.html

    def test_deadline_is_rendered(self):
        email = build_form_reminder_email(
            contact_name="Sam",
            institution_name="North College",
            form_title="Enrollment Form",
            form_url="https://app.example.com/student/form/abc",
            deadline=datetime(2024, 4, 1, tzinfo=timezone.utc),
        )
        assert "April 01, 2024" in email.html
