"""
Template Engine: placeholder substitution and variable validation.

Templates use ``{{name}}`` and ``{{object.property}}`` placeholders. A
placeholder with no matching variable is left in place and logged, so a
partially filled template is visible rather than silently blanked.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

logger = logging.getLogger(__name__)

SIMPLE_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
NESTED_PLACEHOLDER = re.compile(r"\{\{(\w+)\.(\w+)\}\}")


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class TemplateVariable:
    """A variable declared by a template."""
    name: str
    type: str = "string"
    required: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TemplateVariable":
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
        )


@dataclass(frozen=True)
class RenderedEmail:
    """Subject and bodies ready to hand to an email sender."""
    subject: str
    html: str
    text: str


# =============================================================================
# TEMPLATE ENGINE
# =============================================================================


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (datetime, date)):
        return "date"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return "object"
    return type(value).__name__


def _is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return False
        return True
    return False


class TemplateEngine:
    """Stateless helpers for filling and checking message templates."""

    @staticmethod
    def substitute_variables(template: str, variables: dict[str, Any]) -> str:
        """Replace placeholders with values from ``variables``."""

        def simple(match: re.Match) -> str:
            value = variables.get(match.group(1))
            if value is None:
                logger.warning(f"Template variable '{match.group(1)}' not found")
                return match.group(0)
            return str(value)

        def nested(match: re.Match) -> str:
            obj_name, prop = match.group(1), match.group(2)
            obj = variables.get(obj_name)
            if isinstance(obj, dict) and prop in obj:
                return str(obj[prop])
            logger.warning(f"Template variable '{obj_name}.{prop}' not found")
            return match.group(0)

        result = SIMPLE_PLACEHOLDER.sub(simple, template)
        return NESTED_PLACEHOLDER.sub(nested, result)

    @staticmethod
    def validate_variables(
        variables: dict[str, Any],
        schema: Iterable[TemplateVariable],
    ) -> list[str]:
        """
        Check supplied variables against a template's declared set.

        Returns:
            A list of human-readable errors; empty when valid.
        """
        errors: list[str] = []
        for variable in schema:
            value = variables.get(variable.name)
            if value is None:
                if variable.required:
                    errors.append(f"Required variable '{variable.name}' is missing")
                continue

            if not TemplateEngine._matches_type(value, variable.type):
                errors.append(
                    f"Variable '{variable.name}' type mismatch: "
                    f"expected {variable.type}, got {_type_name(value)}"
                )
        return errors

    @staticmethod
    def _matches_type(value: Any, expected: str) -> bool:
        if expected == "string":
            return isinstance(value, str)
        if expected == "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
        if expected == "boolean":
            return isinstance(value, bool)
        if expected == "date":
            return _is_date(value)
        if expected == "object":
            return isinstance(value, (dict, list))
        # Unknown declared types are not enforced
        return True

    @staticmethod
    def extract_variables(template: str) -> list[str]:
        """List the placeholder names used in a template, in first-seen order."""
        found: dict[str, None] = {}
        for match in SIMPLE_PLACEHOLDER.finditer(template):
            found.setdefault(match.group(1), None)
        for match in NESTED_PLACEHOLDER.finditer(template):
            found.setdefault(f"{match.group(1)}.{match.group(2)}", None)
        return list(found)


# =============================================================================
# BUILT-IN EMAILS
# =============================================================================


def build_form_reminder_email(
    contact_name: str,
    institution_name: str,
    form_title: str,
    form_url: str,
    deadline: datetime | None = None,
    progress_percentage: int | None = None,
    remaining_fields: list[str] | None = None,
) -> RenderedEmail:
    """Build the reminder sent for an unfinished form."""
    subject = f"Reminder: Complete Your Application - {institution_name}"

    deadline_html = ""
    deadline_text = ""
    if deadline:
        deadline_str = deadline.strftime("%B %d, %Y")
        deadline_html = f"<p><strong>Deadline:</strong> {deadline_str}</p>"
        deadline_text = f"Deadline: {deadline_str}\n"

    progress_html = ""
    progress_text = ""
    if progress_percentage is not None:
        progress_html = f"<p><strong>Progress:</strong> {progress_percentage}% complete</p>"
        progress_text = f"Progress: {progress_percentage}% complete\n"

    remaining_html = ""
    remaining_text = ""
    if remaining_fields:
        items = "".join(f"<li>{field}</li>" for field in remaining_fields)
        remaining_html = f"""
        <div style="background-color: #FEF3C7; padding: 16px; border-radius: 8px; margin: 20px 0;">
            <h4 style="margin: 0 0 8px 0;">Remaining Fields to Complete:</h4>
            <ul>{items}</ul>
        </div>
        """
        remaining_text = f"Remaining fields: {', '.join(remaining_fields)}\n"

    html = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;
             line-height: 1.6; color: #374151; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2>Application Reminder</h2>
    <p>Hello {contact_name},</p>
    <p>This is a friendly reminder that your application for <strong>{institution_name}</strong>
       is still pending completion.</p>

    <div style="background-color: #EFF6FF; padding: 20px; border-radius: 8px; margin: 20px 0; text-align: center;">
        <h3 style="margin: 0 0 8px 0;">{form_title}</h3>
        <p>Continue where you left off:</p>
        <a href="{form_url}"
           style="background-color: #2563EB; color: white; padding: 12px 24px; text-decoration: none;
                  border-radius: 6px; display: inline-block; margin: 10px 0;">
            Continue Application
        </a>
    </div>

    {progress_html}
    {deadline_html}
    {remaining_html}

    <p><strong>Don't miss out!</strong> Complete your application to secure your spot.</p>
</body>
</html>
"""

    text = (
        f"Application Reminder\n\n"
        f"Hello {contact_name},\n\n"
        f"This is a friendly reminder that your application for {institution_name} "
        f"is still pending completion.\n\n"
        f"Form: {form_title}\n"
        f"Access: {form_url}\n"
        f"{progress_text}{deadline_text}{remaining_text}\n"
        f"Don't miss out! Complete your application to secure your spot."
    )

    return RenderedEmail(subject=subject, html=html, text=text)
