"""Core ExperienceHub data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List


class Choice(str, Enum):
    """Categorical value with a canonical lowercase form and a display label."""

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, value: Any) -> "Choice | None":
        """Map raw input (any casing, label or value) to a member, or None."""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        normalized = text.casefold().replace("-", "_").replace(" ", "_")
        for member in cls:
            if normalized in (member.value, member.label.casefold().replace(" ", "_")):
                return member
        return None


class ExperienceType(Choice):
    INTERN = "intern"
    PLACEMENT = "placement"


class AssessmentType(Choice):
    ONLINE_ASSESSMENT = "online_assessment"
    INTERVIEW = "interview"


class Result(Choice):
    SELECTED = "selected"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"


_LABELS: Dict[Choice, str] = {
    ExperienceType.INTERN: "Internship",
    ExperienceType.PLACEMENT: "Placement",
    AssessmentType.ONLINE_ASSESSMENT: "Online Assessment",
    AssessmentType.INTERVIEW: "Interview",
    Result.SELECTED: "Selected",
    Result.WAITLISTED: "Waitlisted",
    Result.REJECTED: "Rejected",
}


def display_label(choice_type: type[Choice], value: str | None) -> str:
    """Readable label for a stored categorical value; unknown values pass through."""
    member = choice_type.parse(value)
    return member.label if member is not None else (value or "")


@dataclass(slots=True)
class Attachment:
    """Persisted image attached to an experience."""

    id: str
    experience_id: str
    image_url: str
    image_name: str | None = None
    created_at: str | None = None


@dataclass(slots=True)
class Experience:
    """A shared internship or placement narrative."""

    id: str
    company_name: str
    experience_type: str
    assessment_type: str
    candidate_name: str
    graduating_year: int | None
    branch: str | None
    result: str
    experience_description: str | None
    additional_tips: str | None = None
    created_at: str | None = None
    user_id: str | None = None
    images: List[Attachment] = field(default_factory=list)

    def searchable_fields(self) -> List[str]:
        """Text attributes matched by free-text search, missing values as ''."""
        return [
            self.company_name or "",
            self.candidate_name or "",
            self.experience_description or "",
            self.branch or "",
            self.experience_type or "",
            self.assessment_type or "",
            self.result or "",
        ]


@dataclass(slots=True)
class ExperiencePayload:
    """Validated, normalised field values ready to be written to the store."""

    company_name: str
    experience_type: str
    assessment_type: str
    candidate_name: str
    graduating_year: int
    branch: str
    result: str
    experience_description: str
    additional_tips: str | None = None

    def as_row(self) -> Dict[str, Any]:
        return {
            "company_name": self.company_name,
            "experience_type": self.experience_type,
            "assessment_type": self.assessment_type,
            "candidate_name": self.candidate_name,
            "graduating_year": self.graduating_year,
            "branch": self.branch,
            "result": self.result,
            "experience_description": self.experience_description,
            "additional_tips": self.additional_tips,
        }


@dataclass(slots=True, frozen=True)
class PreviewRef:
    """Opaque handle to a locally staged copy of a not-yet-uploaded file."""

    token: str
    path: Path
    filename: str


@dataclass(slots=True)
class PendingAttachment:
    """File selected by the user but not uploaded yet."""

    slot_id: str
    filename: str
    content: bytes
    preview: PreviewRef
    content_type: str | None = None


@dataclass(slots=True, frozen=True)
class IncomingFile:
    """Raw file handed over by a surface (multipart upload, CLI, tests)."""

    filename: str
    content: bytes
    content_type: str | None = None
