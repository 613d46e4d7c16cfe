import asyncio
import threading
import time

import pytest
from sqlalchemy import event

import services
from auth import NotAuthenticatedError
from conftest import course_record, student_record
from forms import CourseDraft, StudentDraft
from gateway import Gateway, TransportError
from pages import (
    NETWORK_ERROR_MESSAGE,
    CourseCatalog, DashboardAggregator, EnrollmentLinker, StudentRegistry,
)


class RecordingGateway(Gateway):
    """Gateway that remembers which tables were queried"""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.tables = []

    def table(self, name):
        self.tables.append(name)
        return super().table(name)


class FailingGateway(Gateway):
    """Gateway whose reads on ``failing`` tables cannot reach the database"""

    def __init__(self, session_factory, failing=()):
        super().__init__(session_factory)
        self.failing = set(failing)

    def table(self, name):
        query = super().table(name)
        if name in self.failing:
            async def unreachable():
                raise TransportError(details="connection refused")
            query.execute = unreachable
        return query


class GatedGateway(Gateway):
    """Gateway whose reads wait until the test opens their gate"""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.gates = []

    def table(self, name):
        query = super().table(name)
        gate = asyncio.Event()
        self.gates.append(gate)
        run = query.execute

        async def execute():
            await gate.wait()
            return await run()

        query.execute = execute
        return query


def always(prompt):
    return True


async def seed_students(gateway, count, **overrides):
    return await gateway.table("students").insert([student_record(i, **overrides) for i in range(count)])


# ============= LIST, SEARCH, PAGINATE =============

async def test_refresh_loads_first_page_newest_first(gateway, auth):
    await seed_students(gateway, 12)
    page = StudentRegistry(gateway, auth)
    await page.refresh()

    assert page.total_count == 12
    assert page.total_pages == 2
    assert len(page.rows) == 10
    assert page.rows[0]["student_code"] == "STU011"
    assert page.showing_range == (1, 10)
    assert not page.has_previous
    assert page.has_next
    assert not page.loading


async def test_navigation_stops_at_first_and_last_page(gateway, auth):
    await seed_students(gateway, 12)
    page = StudentRegistry(gateway, auth)
    await page.refresh()

    await page.next_page()
    assert page.page == 2
    assert [row["student_code"] for row in page.rows] == ["STU001", "STU000"]
    assert page.showing_range == (11, 12)
    assert not page.has_next

    await page.next_page()
    assert page.page == 2

    await page.go_to_page(99)
    assert page.page == 2

    await page.previous_page()
    await page.previous_page()
    assert page.page == 1


async def test_changing_search_resets_to_first_page(gateway, auth):
    await seed_students(gateway, 25)
    page = StudentRegistry(gateway, auth)
    await page.refresh()
    await page.go_to_page(3)
    assert page.page == 3

    await page.set_search("First1")
    assert page.page == 1
    # First1 and First10 through First19
    assert page.total_count == 11
    assert len(page.rows) == 10


async def test_search_covers_rows_beyond_the_current_page(gateway, auth):
    """Test search runs against every row, not only the page on screen"""
    await seed_students(gateway, 15)
    page = StudentRegistry(gateway, auth)
    await page.refresh()
    assert "STU002" not in [row["student_code"] for row in page.rows]

    await page.set_search("stu002")
    assert [row["student_code"] for row in page.rows] == ["STU002"]


async def test_empty_listing(gateway, auth):
    page = CourseCatalog(gateway, auth)
    await page.refresh()
    assert page.rows == []
    assert page.total_pages == 0
    assert page.showing_range == (0, 0)
    assert not page.has_next


async def test_stale_response_is_dropped(session_factory, auth):
    """Test a slow earlier request cannot overwrite a newer result"""
    await Gateway(session_factory).table("students").insert([
        student_record(1, first_name="Ada"),
        student_record(2, first_name="Grace"),
    ])
    gateway = GatedGateway(session_factory)
    page = StudentRegistry(gateway, auth)

    first = asyncio.create_task(page.set_search("ada"))
    await asyncio.sleep(0)
    second = asyncio.create_task(page.set_search(""))
    await asyncio.sleep(0)

    gateway.gates[1].set()
    await second
    assert page.total_count == 2

    gateway.gates[0].set()
    await first
    assert page.search == ""
    assert page.total_count == 2
    assert len(page.rows) == 2
    assert not page.loading


async def test_transport_failure_keeps_last_good_rows(session_factory, auth):
    gateway = FailingGateway(session_factory)
    await seed_students(gateway, 3)
    page = StudentRegistry(gateway, auth)
    await page.refresh()

    gateway.failing.add("students")
    await page.refresh()

    assert len(page.rows) == 3
    assert page.total_count == 3
    assert not page.loading
    assert page.last_notice.message == NETWORK_ERROR_MESSAGE
    assert page.last_notice.destructive


# ============= FORMS =============

async def test_invalid_draft_is_never_sent(session_factory, auth):
    """Test validation failures stop before any gateway call"""
    gateway = RecordingGateway(session_factory)
    page = StudentRegistry(gateway, auth)
    page.open_create()
    page.draft.first_name = "Ada"

    assert not await page.submit()
    assert gateway.tables == []
    assert page.last_notice.title == "Validation Error"
    assert page.last_notice.message == "Student ID is required"
    assert page.dialog_open


async def test_create_closes_dialog_and_refreshes(gateway, auth):
    page = StudentRegistry(gateway, auth)
    await page.refresh()
    page.open_create()
    page.draft = StudentDraft(student_code="STU001", first_name="Ada", last_name="Lovelace", email="ada@x.edu")

    assert await page.submit()
    assert not page.dialog_open
    assert page.draft == StudentDraft()
    assert page.total_count == 1
    row = page.rows[0]
    assert (row["student_code"], row["first_name"], row["email"], row["status"]) == \
        ("STU001", "Ada", "ada@x.edu", "active")
    assert page.last_notice.message == "Student created successfully"


async def test_blank_optional_fields_read_back_as_absent(gateway, auth):
    page = CourseCatalog(gateway, auth)
    page.open_create()
    page.draft = CourseDraft(course_code="CS101", title="Intro", description="", department="")

    assert await page.submit()
    row = page.rows[0]
    assert row["description"] is None
    assert row["department"] is None
    assert (row["credits"], row["max_capacity"]) == (3, 30)


async def test_edit_prefills_and_updates(gateway, auth):
    await seed_students(gateway, 2)
    page = StudentRegistry(gateway, auth)
    await page.refresh()

    record = page.rows[0]
    page.open_edit(record)
    assert page.draft.student_code == record["student_code"]
    page.draft.first_name = "Augusta"
    page.draft.status = "graduated"

    assert await page.submit()
    assert page.total_count == 2
    updated = next(row for row in page.rows if row["id"] == record["id"])
    assert updated["first_name"] == "Augusta"
    assert updated["status"] == "graduated"
    assert page.last_notice.message == "Student updated successfully"


async def test_gateway_rejection_is_shown_verbatim(gateway, auth):
    await gateway.table("students").insert([student_record(1, email="ada@x.edu")])
    page = StudentRegistry(gateway, auth)
    page.open_create()
    page.draft = StudentDraft(student_code="STU999", first_name="Ada", last_name="Byron", email="ada@x.edu")

    assert not await page.submit()
    assert "unique" in page.last_notice.message.lower()
    assert page.dialog_open


# ============= DELETE =============

async def test_delete_requires_confirmation(gateway, auth):
    await seed_students(gateway, 1)
    page = StudentRegistry(gateway, auth)
    await page.refresh()
    prompts = []

    def decline(prompt):
        prompts.append(prompt)
        return False

    assert not await page.delete(page.rows[0]["id"], decline)
    assert prompts == ["Are you sure you want to delete this student?"]
    assert await services.count_rows(gateway, "students") == 1


async def test_delete_on_last_page_steps_back(gateway, auth):
    await seed_students(gateway, 11)
    page = StudentRegistry(gateway, auth)
    await page.refresh()
    await page.next_page()
    assert len(page.rows) == 1

    assert await page.delete(page.rows[0]["id"], always)
    assert page.page == 1
    assert page.total_count == 10
    assert len(page.rows) == 10
    assert page.last_notice.message == "Student deleted successfully"


# ============= ENROLLMENTS =============

async def test_enrollment_scenario(gateway, auth):
    """Test the student, course, duplicate enrollment and cascade walkthrough"""
    students = StudentRegistry(gateway, auth)
    courses = CourseCatalog(gateway, auth)
    enrollments = EnrollmentLinker(gateway, auth)

    students.open_create()
    students.draft = StudentDraft(
        student_code="STU001", first_name="Ada", last_name="Lovelace", email="ada@x.edu", status="active",
    )
    assert await students.submit()

    courses.open_create()
    courses.draft = CourseDraft(course_code="CS101", title="Intro", credits=3, max_capacity=30, status="active")
    assert await courses.submit()

    await enrollments.load()
    [ada] = enrollments.options.students
    [cs101] = enrollments.options.courses

    enrollments.open_create()
    enrollments.select_student(ada.id)
    enrollments.select_course(cs101.id)
    assert await enrollments.submit()
    assert enrollments.total_count == 1
    row = enrollments.rows[0]
    assert row["student"]["first_name"] == "Ada"
    assert row["course"]["course_code"] == "CS101"

    enrollments.open_create()
    enrollments.select_student(ada.id)
    enrollments.select_course(cs101.id)
    assert not await enrollments.submit()
    assert enrollments.last_notice.message == "Student is already enrolled in this course"
    assert enrollments.dialog_open
    assert await services.count_rows(gateway, "enrollments") == 1

    assert await students.delete(ada.id, always)
    await enrollments.refresh()
    assert enrollments.total_count == 0
    assert await services.enrollments_for(gateway, "student_id", ada.id) == []


async def test_enrollment_edit_locks_student_and_course(gateway, auth):
    [student] = await gateway.table("students").insert([student_record(1)])
    [course] = await gateway.table("courses").insert([course_record(1)])
    await gateway.table("enrollments").insert([{"student_id": student["id"], "course_id": course["id"]}])

    page = EnrollmentLinker(gateway, auth)
    await page.refresh()
    page.open_edit(page.rows[0])
    assert page.selection_locked

    with pytest.raises(ValueError):
        page.select_student(student["id"])
    with pytest.raises(ValueError):
        page.select_course(course["id"])

    page.draft.grade = "A"
    page.draft.status = "completed"
    assert await page.submit()

    row = page.rows[0]
    assert (row["grade"], row["status"]) == ("A", "completed")
    assert (row["student_id"], row["course_id"]) == (student["id"], course["id"])
    assert not page.selection_locked


async def test_enrollment_search_by_student_or_course(gateway, auth):
    ada, grace = await gateway.table("students").insert([
        student_record(1, first_name="Ada", last_name="Lovelace"),
        student_record(2, first_name="Grace", last_name="Hopper"),
    ])
    [course] = await gateway.table("courses").insert([course_record(1, course_code="CS101", title="Intro")])
    for student in (ada, grace):
        await gateway.table("enrollments").insert([{"student_id": student["id"], "course_id": course["id"]}])

    page = EnrollmentLinker(gateway, auth)
    await page.set_search("hopper")
    assert [row["student"]["last_name"] for row in page.rows] == ["Hopper"]

    await page.set_search("cs101")
    assert page.total_count == 2


async def test_enrollment_options_only_active(gateway, auth):
    await gateway.table("students").insert([
        student_record(1, last_name="Turing"),
        student_record(2, last_name="Babbage"),
        student_record(3, last_name="Hopper", status="graduated"),
    ])
    await gateway.table("courses").insert([
        course_record(1, course_code="MA200"),
        course_record(2, course_code="CS101"),
        course_record(3, course_code="CS999", status="inactive"),
    ])
    page = EnrollmentLinker(gateway, auth)
    await page.load_options()

    assert [s.last_name for s in page.options.students] == ["Babbage", "Turing"]
    assert [c.course_code for c in page.options.courses] == ["CS101", "MA200"]


# ============= DASHBOARD =============

async def test_dashboard_counts(gateway, auth):
    students = await gateway.table("students").insert([
        student_record(1), student_record(2), student_record(3, status="inactive"),
    ])
    [course] = await gateway.table("courses").insert([course_record(1)])
    await gateway.table("enrollments").insert([{"student_id": students[0]["id"], "course_id": course["id"]}])

    dashboard = DashboardAggregator(gateway, auth)
    stats = await dashboard.load()
    assert stats.model_dump() == {
        "total_students": 3,
        "active_students": 2,
        "total_courses": 1,
        "total_enrollments": 1,
    }
    assert not dashboard.loading


async def test_dashboard_failed_count_reads_as_zero(session_factory, auth):
    gateway = FailingGateway(session_factory, failing={"courses"})
    await seed_students(gateway, 2)

    stats = await DashboardAggregator(gateway, auth).load()
    assert stats.total_students == 2
    assert stats.active_students == 2
    assert stats.total_courses == 0
    assert stats.total_enrollments == 0


async def test_dashboard_counts_run_concurrently(engine, gateway, auth):
    """Test the four counts are in flight at the same time"""
    await seed_students(gateway, 3)
    round_trip = 0.05
    in_flight = 0
    peak = 0
    lock = threading.Lock()

    def slow_round_trip(conn, cursor, statement, parameters, context, executemany):
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(round_trip)
        with lock:
            in_flight -= 1

    event.listen(engine, "before_cursor_execute", slow_round_trip)
    try:
        started = time.perf_counter()
        stats = await DashboardAggregator(gateway, auth).load()
        elapsed = time.perf_counter() - started
    finally:
        event.remove(engine, "before_cursor_execute", slow_round_trip)

    assert stats.total_students == 3
    assert stats.active_students == 3
    assert peak >= 2
    assert elapsed < 4 * round_trip


# ============= SESSION =============

async def test_pages_require_a_session(gateway, auth):
    auth.sign_out()
    page = StudentRegistry(gateway, auth)
    with pytest.raises(NotAuthenticatedError):
        await page.refresh()
    with pytest.raises(NotAuthenticatedError):
        await DashboardAggregator(gateway, auth).load()


def test_auth_context_restores_stored_session():
    from auth import AuthContext, AuthSession, MemorySessionStore

    store = MemorySessionStore(AuthSession(access_token="abc", user_email="registrar@example.edu"))
    context = AuthContext(store)
    assert not context.is_authenticated

    context.init()
    assert context.require().user_email == "registrar@example.edu"

    context.sign_out()
    assert store.load() is None
    assert not context.is_authenticated
