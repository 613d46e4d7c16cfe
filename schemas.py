import math
import uuid
from datetime import date, datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field, field_validator

from models import CourseStatus, EnrollmentStatus, StudentStatus

T = TypeVar("T")


def blank_to_none(value):
    """Empty or whitespace-only text means the field is not set."""
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Student Schemas
class StudentBase(BaseModel):
    """Base schema for student with common attributes"""
    student_code: str = Field(..., min_length=1, max_length=20, description="Human-readable student code, e.g. STU001")
    first_name: str = Field(..., min_length=1, max_length=50, description="Student's first name")
    last_name: str = Field(..., min_length=1, max_length=50, description="Student's last name")
    email: EmailStr = Field(..., description="Student's email address")
    enrollment_date: date = Field(default_factory=date.today, description="Date the student enrolled")
    status: StudentStatus = Field(StudentStatus.active, description="Lifecycle status")

    @field_validator("student_code", "first_name", "last_name", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value


class StudentCreate(StudentBase):
    """Schema for creating a new student"""
    pass


class StudentUpdate(StudentBase):
    """Schema for updating a student (full record)"""
    pass


class StudentResponse(StudentBase):
    """Schema for student response"""
    id: uuid.UUID
    email: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StudentSummary(BaseModel):
    """Student fields embedded in enrollment rows and dropdowns"""
    id: uuid.UUID
    student_code: str
    first_name: str
    last_name: str


# Course Schemas
class CourseBase(BaseModel):
    """Base schema for course with common attributes"""
    course_code: str = Field(..., min_length=1, max_length=20, description="Course code, e.g. CS101")
    title: str = Field(..., min_length=1, max_length=100, description="Course title")
    description: Optional[str] = Field(None, max_length=500, description="Course description")
    credits: int = Field(3, ge=1, le=12, description="Number of credits")
    department: Optional[str] = Field(None, max_length=50, description="Department offering the course")
    max_capacity: int = Field(30, ge=1, le=500, description="Maximum number of enrolled students")
    status: CourseStatus = Field(CourseStatus.active, description="Lifecycle status")

    @field_validator("course_code", "title", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("description", "department", mode="before")
    @classmethod
    def optional_text(cls, value):
        return blank_to_none(value)


class CourseCreate(CourseBase):
    """Schema for creating a new course"""
    pass


class CourseUpdate(CourseBase):
    """Schema for updating a course (full record)"""
    pass


class CourseResponse(CourseBase):
    """Schema for course response"""
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CourseSummary(BaseModel):
    """Course fields embedded in enrollment rows and dropdowns"""
    id: uuid.UUID
    course_code: str
    title: str


# Enrollment Schemas
class EnrollmentBase(BaseModel):
    """Base schema for enrollment with common attributes"""
    grade: Optional[str] = Field(None, max_length=2, description="Grade (e.g., A, B+, C)")
    status: EnrollmentStatus = Field(EnrollmentStatus.enrolled, description="Lifecycle status")

    @field_validator("grade", mode="before")
    @classmethod
    def optional_text(cls, value):
        value = blank_to_none(value)
        return value.strip() if isinstance(value, str) else value


class EnrollmentCreate(EnrollmentBase):
    """Schema for creating a new enrollment"""
    student_id: uuid.UUID = Field(..., description="Student ID")
    course_id: uuid.UUID = Field(..., description="Course ID")


class EnrollmentUpdate(EnrollmentBase):
    """Schema for updating an enrollment; student and course are fixed at creation"""
    pass


class EnrollmentResponse(EnrollmentBase):
    """Schema for enrollment response"""
    id: uuid.UUID
    student_id: uuid.UUID
    course_id: uuid.UUID
    enrolled_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EnrollmentDetail(EnrollmentResponse):
    """Enrollment with the related student and course summaries"""
    student: StudentSummary
    course: CourseSummary


class EnrollmentOptions(BaseModel):
    """Active students and courses offered in the enrollment form"""
    students: List[StudentSummary] = []
    courses: List[CourseSummary] = []


# Listing Schemas
class Page(BaseModel, Generic[T]):
    """One page of a filtered listing plus the total matching count"""
    items: List[T]
    total_count: int
    page: int
    page_size: int

    @computed_field
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0


class DashboardStats(BaseModel):
    """Summary figures shown on the dashboard"""
    total_students: int = 0
    active_students: int = 0
    total_courses: int = 0
    total_enrollments: int = 0
