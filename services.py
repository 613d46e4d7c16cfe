"""
Record operations shared by the HTTP API and the page controllers.

Listing follows one contract for every table: a 1-based page of
``config.PAGE_SIZE`` rows, newest first, optionally narrowed by a
case-insensitive search over a fixed set of text fields, returned together
with the total number of matching rows.
"""
import asyncio
import logging
import math
import uuid
from typing import Any, Dict, List, Optional, Tuple

import config
from gateway import Gateway, GatewayError, QueryResult, UNIQUE_VIOLATION
from schemas import (
    CourseCreate, CourseUpdate,
    DashboardStats,
    EnrollmentCreate, EnrollmentOptions, EnrollmentUpdate,
    StudentCreate, StudentUpdate,
)

logger = logging.getLogger(__name__)

DUPLICATE_ENROLLMENT_MESSAGE = "Student is already enrolled in this course"

STUDENT_SEARCH_FIELDS = ("first_name", "last_name", "email", "student_code")
COURSE_SEARCH_FIELDS = ("course_code", "title", "department")
ENROLLMENT_SEARCH_FIELDS = (
    "student.student_code",
    "student.first_name",
    "student.last_name",
    "course.course_code",
    "course.title",
)
STUDENT_SUMMARY_COLUMNS = ("id", "student_code", "first_name", "last_name")
COURSE_SUMMARY_COLUMNS = ("id", "course_code", "title")


class DuplicateEnrollmentError(GatewayError):
    """The student already has an enrollment in the course"""

    def __init__(self, details: Optional[str] = None):
        super().__init__(UNIQUE_VIOLATION, DUPLICATE_ENROLLMENT_MESSAGE, details)


def page_bounds(page: int, page_size: int) -> Tuple[int, int]:
    """Inclusive row range for a 1-based page."""
    start = (max(page, 1) - 1) * page_size
    return start, start + page_size - 1


def total_pages(total_count: int, page_size: int) -> int:
    return math.ceil(total_count / page_size) if page_size > 0 else 0


# ============= LISTINGS =============

async def list_students(gateway: Gateway, page: int = 1, search: Optional[str] = None,
                        page_size: int = config.PAGE_SIZE) -> QueryResult:
    start, end = page_bounds(page, page_size)
    return await (
        gateway.table("students")
        .select(count=True)
        .ilike_any(STUDENT_SEARCH_FIELDS, search)
        .order("created_at", descending=True)
        .range(start, end)
        .execute()
    )


async def list_courses(gateway: Gateway, page: int = 1, search: Optional[str] = None,
                       page_size: int = config.PAGE_SIZE) -> QueryResult:
    start, end = page_bounds(page, page_size)
    return await (
        gateway.table("courses")
        .select(count=True)
        .ilike_any(COURSE_SEARCH_FIELDS, search)
        .order("created_at", descending=True)
        .range(start, end)
        .execute()
    )


async def list_enrollments(gateway: Gateway, page: int = 1, search: Optional[str] = None,
                           page_size: int = config.PAGE_SIZE) -> QueryResult:
    start, end = page_bounds(page, page_size)
    return await (
        gateway.table("enrollments")
        .select(count=True)
        .expand("student", *STUDENT_SUMMARY_COLUMNS)
        .expand("course", *COURSE_SUMMARY_COLUMNS)
        .ilike_any(ENROLLMENT_SEARCH_FIELDS, search)
        .order("enrolled_at", descending=True)
        .range(start, end)
        .execute()
    )


async def enrollments_for(gateway: Gateway, field_name: str, record_id: uuid.UUID) -> List[Dict[str, Any]]:
    """All enrollments of one student (``student_id``) or one course (``course_id``)."""
    result = await (
        gateway.table("enrollments")
        .select()
        .eq(field_name, record_id)
        .order("enrolled_at", descending=True)
        .execute()
    )
    return result.data


async def get_record(gateway: Gateway, table: str, record_id: uuid.UUID) -> Optional[Dict[str, Any]]:
    query = gateway.table(table).select().eq("id", record_id)
    if table == "enrollments":
        query = query.expand("student", *STUDENT_SUMMARY_COLUMNS).expand("course", *COURSE_SUMMARY_COLUMNS)
    result = await query.execute()
    return result.data[0] if result.data else None


# ============= WRITES =============

async def create_record(gateway: Gateway, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
    rows = await gateway.table(table).insert([values])
    logger.info(f"Inserted {table} row {rows[0]['id']}")
    return rows[0]


async def update_record(gateway: Gateway, table: str, record_id: uuid.UUID,
                        values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    rows = await gateway.table(table).eq("id", record_id).update(values)
    if not rows:
        logger.warning(f"No {table} row {record_id} to update")
        return None
    logger.info(f"Updated {table} row {record_id}")
    return rows[0]


async def delete_record(gateway: Gateway, table: str, record_id: uuid.UUID) -> bool:
    rows = await gateway.table(table).eq("id", record_id).delete()
    if not rows:
        logger.warning(f"No {table} row {record_id} to delete")
        return False
    logger.info(f"Deleted {table} row {record_id}")
    return True


async def create_student(gateway: Gateway, student: StudentCreate) -> Dict[str, Any]:
    return await create_record(gateway, "students", student.model_dump())


async def update_student(gateway: Gateway, student_id: uuid.UUID, student: StudentUpdate) -> Optional[Dict[str, Any]]:
    return await update_record(gateway, "students", student_id, student.model_dump())


async def create_course(gateway: Gateway, course: CourseCreate) -> Dict[str, Any]:
    return await create_record(gateway, "courses", course.model_dump())


async def update_course(gateway: Gateway, course_id: uuid.UUID, course: CourseUpdate) -> Optional[Dict[str, Any]]:
    return await update_record(gateway, "courses", course_id, course.model_dump())


async def create_enrollment(gateway: Gateway, enrollment: EnrollmentCreate) -> Dict[str, Any]:
    """Insert an enrollment; a repeated (student, course) pair raises ``DuplicateEnrollmentError``."""
    try:
        return await create_record(gateway, "enrollments", enrollment.model_dump())
    except GatewayError as exc:
        if exc.code == UNIQUE_VIOLATION:
            logger.warning(
                f"Student {enrollment.student_id} already enrolled in course {enrollment.course_id}"
            )
            raise DuplicateEnrollmentError(exc.details) from exc
        raise


async def update_enrollment(gateway: Gateway, enrollment_id: uuid.UUID,
                            enrollment: EnrollmentUpdate) -> Optional[Dict[str, Any]]:
    # student_id and course_id are not part of EnrollmentUpdate and never change
    return await update_record(gateway, "enrollments", enrollment_id, enrollment.model_dump())


# ============= LOOKUPS AND COUNTS =============

async def enrollment_options(gateway: Gateway) -> EnrollmentOptions:
    """Active students and courses for the enrollment form; failures leave a list empty."""
    async def active(table: str, columns: Tuple[str, ...], order_by: str) -> List[Dict[str, Any]]:
        result = await gateway.table(table).select(*columns).eq("status", "active").order(order_by).execute()
        return result.data

    lists = await asyncio.gather(
        active("students", STUDENT_SUMMARY_COLUMNS, "last_name"),
        active("courses", COURSE_SUMMARY_COLUMNS, "course_code"),
        return_exceptions=True,
    )
    values = {}
    for name, rows in zip(("students", "courses"), lists):
        if isinstance(rows, Exception):
            logger.error(f"Error fetching {name} options: {rows}")
            rows = []
        values[name] = rows
    return EnrollmentOptions(**values)


async def count_rows(gateway: Gateway, table: str, **filters: Any) -> int:
    query = gateway.table(table).select("id", head=True)
    for name, value in filters.items():
        query = query.eq(name, value)
    result = await query.execute()
    return result.count or 0


async def dashboard_stats(gateway: Gateway) -> DashboardStats:
    """Run the four dashboard counts concurrently; a failed count reads as zero."""
    names = ("total_students", "active_students", "total_courses", "total_enrollments")
    results = await asyncio.gather(
        count_rows(gateway, "students"),
        count_rows(gateway, "students", status="active"),
        count_rows(gateway, "courses"),
        count_rows(gateway, "enrollments"),
        return_exceptions=True,
    )
    counts = {}
    for name, result in zip(names, results):
        if isinstance(result, Exception):
            logger.error(f"Error fetching {name}: {result}")
            result = 0
        counts[name] = result
    return DashboardStats(**counts)
