"""
Draft records for the create/edit dialogs.

A draft holds raw form input and is never validated on assignment, so it can
hold half-typed values. ``validate_draft`` checks it against the matching
request schema and returns every violation as a readable message.
"""
import uuid
from datetime import date
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, ValidationError

from models import CourseStatus, EnrollmentStatus, StudentStatus
from schemas import (
    CourseCreate, CourseUpdate,
    EnrollmentCreate, EnrollmentUpdate,
    StudentCreate, StudentUpdate,
)


class Draft(BaseModel):
    """Base class for unsaved form state"""
    create_schema: ClassVar[Type[BaseModel]]
    update_schema: ClassVar[Type[BaseModel]]
    labels: ClassVar[Dict[str, str]] = {}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Draft":
        """Pre-fill a draft from a stored record; unset optional text becomes an empty input."""
        values = {}
        for name, info in cls.model_fields.items():
            if name not in record:
                continue
            value = record[name]
            if value is None and info.default == "":
                value = ""
            values[name] = value
        return cls(**values)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump()

    def label(self, name: str) -> str:
        return self.labels.get(name, name.replace("_", " ").capitalize())


def _describe(draft: Draft, error: Dict[str, Any]) -> str:
    name = str(error["loc"][0]) if error["loc"] else "form"
    label = draft.label(name)
    value = error.get("input")
    if error["type"] == "missing" or value is None or (isinstance(value, str) and not value.strip()):
        return f"{label} is required"
    return f"{label}: {error['msg']}"


def parse_draft(draft: Draft, schema: Optional[Type[BaseModel]] = None) -> Tuple[Optional[BaseModel], List[str]]:
    """Return the validated request model, or ``None`` with the violations."""
    schema = schema or draft.create_schema
    try:
        return schema.model_validate(draft.payload()), []
    except ValidationError as exc:
        return None, [_describe(draft, error) for error in exc.errors()]


def validate_draft(draft: Draft, schema: Optional[Type[BaseModel]] = None) -> List[str]:
    return parse_draft(draft, schema)[1]


class StudentDraft(Draft):
    student_code: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    enrollment_date: date = Field(default_factory=date.today)
    status: StudentStatus = StudentStatus.active

    create_schema: ClassVar[Type[BaseModel]] = StudentCreate
    update_schema: ClassVar[Type[BaseModel]] = StudentUpdate
    labels: ClassVar[Dict[str, str]] = {
        "student_code": "Student ID",
        "first_name": "First name",
        "last_name": "Last name",
        "email": "Email",
        "enrollment_date": "Enrollment date",
        "status": "Status",
    }


class CourseDraft(Draft):
    course_code: str = ""
    title: str = ""
    description: str = ""
    credits: int = 3
    department: str = ""
    max_capacity: int = 30
    status: CourseStatus = CourseStatus.active

    create_schema: ClassVar[Type[BaseModel]] = CourseCreate
    update_schema: ClassVar[Type[BaseModel]] = CourseUpdate
    labels: ClassVar[Dict[str, str]] = {
        "course_code": "Course code",
        "max_capacity": "Max capacity",
    }


class EnrollmentDraft(Draft):
    student_id: Optional[uuid.UUID] = None
    course_id: Optional[uuid.UUID] = None
    grade: str = ""
    status: EnrollmentStatus = EnrollmentStatus.enrolled

    create_schema: ClassVar[Type[BaseModel]] = EnrollmentCreate
    update_schema: ClassVar[Type[BaseModel]] = EnrollmentUpdate
    labels: ClassVar[Dict[str, str]] = {
        "student_id": "Student",
        "course_id": "Course",
    }
