"""Form validation run before anything is written to the store."""

from __future__ import annotations

from typing import Any, Mapping

from experiencehub.errors import ValidationError
from experiencehub.models import AssessmentType, ExperiencePayload, ExperienceType, Result

MIN_GRADUATING_YEAR = 1900
MAX_GRADUATING_YEAR = 2100

_REQUIRED = (
    ("company_name", "Company name is required."),
    ("candidate_name", "Your name is required."),
    ("experience_type", "Please select experience type."),
    ("assessment_type", "Please select assessment type."),
    ("graduating_year", "Graduating year is required."),
    ("branch", "Branch is required."),
    ("result", "Please select result."),
    ("experience_description", "Experience description is required."),
)


def _text(form: Mapping[str, Any], key: str) -> str:
    value = form.get(key)
    if value is None:
        return ""
    return str(value).strip()


def parse_graduating_year(value: Any) -> int | None:
    """Parse a year the way a lenient integer input does; None when invalid."""
    text = str(value).strip() if value is not None else ""
    digits = ""
    for index, char in enumerate(text):
        if char.isdigit() or (index == 0 and char in "+-"):
            digits += char
        else:
            break
    try:
        year = int(digits)
    except ValueError:
        return None
    if year < MIN_GRADUATING_YEAR or year > MAX_GRADUATING_YEAR:
        return None
    return year


def validate_form(form: Mapping[str, Any]) -> ExperiencePayload:
    """Check a submitted form and return the normalised payload.

    Raises ValidationError carrying the first failing field and a message
    suitable for showing next to the form.
    """
    for key, message in _REQUIRED:
        if not _text(form, key):
            raise ValidationError(key, message)

    year = parse_graduating_year(form.get("graduating_year"))
    if year is None:
        raise ValidationError("graduating_year", "Please enter a valid graduating year.")

    experience_type = ExperienceType.parse(form.get("experience_type"))
    if experience_type is None:
        raise ValidationError("experience_type", "Invalid experience type selected.")
    assessment_type = AssessmentType.parse(form.get("assessment_type"))
    if assessment_type is None:
        raise ValidationError("assessment_type", "Invalid assessment type selected.")
    result = Result.parse(form.get("result"))
    if result is None:
        raise ValidationError("result", "Invalid result selected.")

    return ExperiencePayload(
        company_name=_text(form, "company_name"),
        experience_type=experience_type.value,
        assessment_type=assessment_type.value,
        candidate_name=_text(form, "candidate_name"),
        graduating_year=year,
        branch=_text(form, "branch"),
        result=result.value,
        experience_description=_text(form, "experience_description"),
        additional_tips=_text(form, "additional_tips") or None,
    )
