from fastapi import FastAPI, HTTPException, Depends, Query, status, Request
from fastapi.responses import JSONResponse
from typing import List, Optional
import logging
import sys
import uuid
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import config
import services
from auth import require_api_session
from database import create_db_and_tables, get_session_factory
from gateway import (
    Gateway, GatewayError, TransportError,
    UNIQUE_VIOLATION, INTERNAL_ERROR,
)
from schemas import (
    Page, DashboardStats,
    StudentCreate, StudentUpdate, StudentResponse,
    CourseCreate, CourseUpdate, CourseResponse,
    EnrollmentCreate, EnrollmentUpdate, EnrollmentResponse, EnrollmentDetail, EnrollmentOptions,
)

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(config.LOG_FILE)
    ]
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Academic Records API",
    description="Students, courses and enrollments with search, pagination and dashboard counts",
    version="1.0.0"
)

authenticated = [Depends(require_api_session)]


def get_gateway(session_factory: sessionmaker = Depends(get_session_factory)) -> Gateway:
    return Gateway(session_factory)


# Global exception handlers
@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    """Turn gateway rejections into client errors, keeping the gateway's message"""
    if isinstance(exc, TransportError):
        logger.error(f"Database unreachable: {exc.details}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "The database is unavailable. Please try again later.", "code": exc.code}
        )
    if exc.code == UNIQUE_VIOLATION:
        status_code = status.HTTP_409_CONFLICT
    elif exc.code == INTERNAL_ERROR:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    logger.warning(f"Gateway rejected {request.method} {request.url.path}: [{exc.code}] {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle database-related errors"""
    logger.error(f"Database error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "A database error occurred. Please try again later."}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all uncaught exceptions"""
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please contact support."}
    )


@app.on_event("startup")
def on_startup():
    """Create database tables on startup"""
    try:
        logger.info("Starting application...")
        create_db_and_tables()
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {str(e)}", exc_info=True)
        raise


@app.get("/", tags=["Root"])
async def read_root():
    """Root endpoint"""
    logger.info("Root endpoint accessed")
    return {
        "message": "Welcome to Academic Records API",
        "docs": "/docs",
        "redoc": "/redoc"
    }


def _page(result, page: int):
    return {
        "items": result.data,
        "total_count": result.count or 0,
        "page": page,
        "page_size": config.PAGE_SIZE,
    }


def _not_found(noun: str, record_id: uuid.UUID):
    logger.warning(f"{noun} not found with ID: {record_id}")
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{noun} not found")


# ============= DASHBOARD =============

@app.get("/dashboard/stats", response_model=DashboardStats, tags=["Dashboard"], dependencies=authenticated)
async def read_dashboard_stats(gateway: Gateway = Depends(get_gateway)):
    """Total students, active students, total courses and total enrollments"""
    logger.info("Fetching dashboard stats")
    return await services.dashboard_stats(gateway)


# ============= STUDENT ENDPOINTS =============

@app.post("/students/", response_model=StudentResponse, status_code=status.HTTP_201_CREATED,
          tags=["Students"], dependencies=authenticated)
async def create_student(student: StudentCreate, gateway: Gateway = Depends(get_gateway)):
    """Create a new student"""
    logger.info(f"Creating student {student.student_code} with email: {student.email}")
    return await services.create_student(gateway, student)


@app.get("/students/", response_model=Page[StudentResponse], tags=["Students"], dependencies=authenticated)
async def read_students(page: int = Query(1, ge=1), search: Optional[str] = None,
                        gateway: Gateway = Depends(get_gateway)):
    """Get one page of students, newest first, optionally filtered by name, email or student code"""
    logger.info(f"Fetching students page={page}, search={search!r}")
    result = await services.list_students(gateway, page, search, config.PAGE_SIZE)
    logger.info(f"Retrieved {len(result.data)} of {result.count} students")
    return _page(result, page)


@app.get("/students/{student_id}", response_model=StudentResponse, tags=["Students"], dependencies=authenticated)
async def read_student(student_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Get a specific student by ID"""
    logger.info(f"Fetching student with ID: {student_id}")
    student = await services.get_record(gateway, "students", student_id)
    if not student:
        raise _not_found("Student", student_id)
    return student


@app.put("/students/{student_id}", response_model=StudentResponse, tags=["Students"], dependencies=authenticated)
async def update_student(student_id: uuid.UUID, student_update: StudentUpdate,
                         gateway: Gateway = Depends(get_gateway)):
    """Replace a student's information"""
    logger.info(f"Updating student with ID: {student_id}")
    student = await services.update_student(gateway, student_id, student_update)
    if not student:
        raise _not_found("Student", student_id)
    return student


@app.delete("/students/{student_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Students"],
            dependencies=authenticated)
async def delete_student(student_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Delete a student together with their enrollments"""
    logger.info(f"Deleting student with ID: {student_id}")
    if not await services.delete_record(gateway, "students", student_id):
        raise _not_found("Student", student_id)
    return None


@app.get("/students/{student_id}/enrollments", response_model=List[EnrollmentResponse], tags=["Enrollments"],
         dependencies=authenticated)
async def read_student_enrollments(student_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Get all enrollments for a specific student"""
    logger.info(f"Fetching enrollments for student: {student_id}")
    if not await services.get_record(gateway, "students", student_id):
        raise _not_found("Student", student_id)
    enrollments = await services.enrollments_for(gateway, "student_id", student_id)
    logger.info(f"Retrieved {len(enrollments)} enrollments for student {student_id}")
    return enrollments


# ============= COURSE ENDPOINTS =============

@app.post("/courses/", response_model=CourseResponse, status_code=status.HTTP_201_CREATED,
          tags=["Courses"], dependencies=authenticated)
async def create_course(course: CourseCreate, gateway: Gateway = Depends(get_gateway)):
    """Create a new course"""
    logger.info(f"Creating course: {course.course_code} {course.title}")
    return await services.create_course(gateway, course)


@app.get("/courses/", response_model=Page[CourseResponse], tags=["Courses"], dependencies=authenticated)
async def read_courses(page: int = Query(1, ge=1), search: Optional[str] = None,
                       gateway: Gateway = Depends(get_gateway)):
    """Get one page of courses, newest first, optionally filtered by code, title or department"""
    logger.info(f"Fetching courses page={page}, search={search!r}")
    result = await services.list_courses(gateway, page, search, config.PAGE_SIZE)
    logger.info(f"Retrieved {len(result.data)} of {result.count} courses")
    return _page(result, page)


@app.get("/courses/{course_id}", response_model=CourseResponse, tags=["Courses"], dependencies=authenticated)
async def read_course(course_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Get a specific course by ID"""
    logger.info(f"Fetching course with ID: {course_id}")
    course = await services.get_record(gateway, "courses", course_id)
    if not course:
        raise _not_found("Course", course_id)
    return course


@app.put("/courses/{course_id}", response_model=CourseResponse, tags=["Courses"], dependencies=authenticated)
async def update_course(course_id: uuid.UUID, course_update: CourseUpdate,
                        gateway: Gateway = Depends(get_gateway)):
    """Replace a course's information"""
    logger.info(f"Updating course with ID: {course_id}")
    course = await services.update_course(gateway, course_id, course_update)
    if not course:
        raise _not_found("Course", course_id)
    return course


@app.delete("/courses/{course_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Courses"],
            dependencies=authenticated)
async def delete_course(course_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Delete a course together with its enrollments"""
    logger.info(f"Deleting course with ID: {course_id}")
    if not await services.delete_record(gateway, "courses", course_id):
        raise _not_found("Course", course_id)
    return None


@app.get("/courses/{course_id}/enrollments", response_model=List[EnrollmentResponse], tags=["Enrollments"],
         dependencies=authenticated)
async def read_course_enrollments(course_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Get all enrollments for a specific course"""
    logger.info(f"Fetching enrollments for course: {course_id}")
    if not await services.get_record(gateway, "courses", course_id):
        raise _not_found("Course", course_id)
    enrollments = await services.enrollments_for(gateway, "course_id", course_id)
    logger.info(f"Retrieved {len(enrollments)} enrollments for course {course_id}")
    return enrollments


# ============= ENROLLMENT ENDPOINTS =============

@app.post("/enrollments/", response_model=EnrollmentResponse, status_code=status.HTTP_201_CREATED,
          tags=["Enrollments"], dependencies=authenticated)
async def create_enrollment(enrollment: EnrollmentCreate, gateway: Gateway = Depends(get_gateway)):
    """Enroll a student in a course"""
    logger.info(f"Creating enrollment for student {enrollment.student_id} in course {enrollment.course_id}")
    return await services.create_enrollment(gateway, enrollment)


@app.get("/enrollments/", response_model=Page[EnrollmentDetail], tags=["Enrollments"], dependencies=authenticated)
async def read_enrollments(page: int = Query(1, ge=1), search: Optional[str] = None,
                           gateway: Gateway = Depends(get_gateway)):
    """Get one page of enrollments, most recent first, with student and course summaries"""
    logger.info(f"Fetching enrollments page={page}, search={search!r}")
    result = await services.list_enrollments(gateway, page, search, config.PAGE_SIZE)
    logger.info(f"Retrieved {len(result.data)} of {result.count} enrollments")
    return _page(result, page)


@app.get("/enrollments/options", response_model=EnrollmentOptions, tags=["Enrollments"],
         dependencies=authenticated)
async def read_enrollment_options(gateway: Gateway = Depends(get_gateway)):
    """Active students and courses to choose from when enrolling"""
    logger.info("Fetching enrollment options")
    return await services.enrollment_options(gateway)


@app.get("/enrollments/{enrollment_id}", response_model=EnrollmentDetail, tags=["Enrollments"],
         dependencies=authenticated)
async def read_enrollment(enrollment_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Get a specific enrollment by ID"""
    logger.info(f"Fetching enrollment with ID: {enrollment_id}")
    enrollment = await services.get_record(gateway, "enrollments", enrollment_id)
    if not enrollment:
        raise _not_found("Enrollment", enrollment_id)
    return enrollment


@app.put("/enrollments/{enrollment_id}", response_model=EnrollmentResponse, tags=["Enrollments"],
         dependencies=authenticated)
async def update_enrollment(enrollment_id: uuid.UUID, enrollment_update: EnrollmentUpdate,
                            gateway: Gateway = Depends(get_gateway)):
    """Update an enrollment's grade and status"""
    logger.info(f"Updating enrollment with ID: {enrollment_id}")
    enrollment = await services.update_enrollment(gateway, enrollment_id, enrollment_update)
    if not enrollment:
        raise _not_found("Enrollment", enrollment_id)
    return enrollment


@app.delete("/enrollments/{enrollment_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Enrollments"],
            dependencies=authenticated)
async def delete_enrollment(enrollment_id: uuid.UUID, gateway: Gateway = Depends(get_gateway)):
    """Delete an enrollment (unenroll a student from a course)"""
    logger.info(f"Deleting enrollment with ID: {enrollment_id}")
    if not await services.delete_record(gateway, "enrollments", enrollment_id):
        raise _not_found("Enrollment", enrollment_id)
    return None


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
