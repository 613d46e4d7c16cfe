import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StudentStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    graduated = "graduated"


class CourseStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class EnrollmentStatus(str, Enum):
    enrolled = "enrolled"
    completed = "completed"
    dropped = "dropped"


def status_check(table: str, statuses: type) -> CheckConstraint:
    allowed = ", ".join(f"'{status.value}'" for status in statuses)
    return CheckConstraint(f"status IN ({allowed})", name=f"{table}_status_check")


class Student(SQLModel, table=True):
    """Student record"""
    __tablename__ = "students"
    __table_args__ = (status_check("students", StudentStatus),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    student_code: str = Field(unique=True, index=True, max_length=20)
    first_name: str = Field(index=True, max_length=50)
    last_name: str = Field(index=True, max_length=50)
    email: str = Field(unique=True, index=True)
    enrollment_date: date = Field(default_factory=date.today)
    status: StudentStatus = Field(default=StudentStatus.active, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    enrollments: List["Enrollment"] = Relationship(back_populates="student", cascade_delete=True)


class Course(SQLModel, table=True):
    """Course record"""
    __tablename__ = "courses"
    __table_args__ = (status_check("courses", CourseStatus),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    course_code: str = Field(unique=True, index=True, max_length=20)
    title: str = Field(index=True, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    credits: int = Field(default=3, ge=1, le=12)
    department: Optional[str] = Field(default=None, max_length=50)
    max_capacity: int = Field(default=30, ge=1, le=500)
    status: CourseStatus = Field(default=CourseStatus.active, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    enrollments: List["Enrollment"] = Relationship(back_populates="course", cascade_delete=True)


class Enrollment(SQLModel, table=True):
    """Enrollment linking one student to one course"""
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="enrollments_student_id_course_id_key"),
        status_check("enrollments", EnrollmentStatus),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    student_id: uuid.UUID = Field(foreign_key="students.id", ondelete="CASCADE", index=True)
    course_id: uuid.UUID = Field(foreign_key="courses.id", ondelete="CASCADE", index=True)
    enrolled_at: datetime = Field(default_factory=utcnow, index=True)
    grade: Optional[str] = Field(default=None, max_length=2)
    status: EnrollmentStatus = Field(default=EnrollmentStatus.enrolled)

    student: Optional[Student] = Relationship(back_populates="enrollments")
    course: Optional[Course] = Relationship(back_populates="enrollments")
