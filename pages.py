"""
Page controllers for the dashboard and the three record screens.

Each controller owns the view state of one screen (rows, total count, page,
search term, loading flag, notices, dialog draft) and talks to the database
only through the gateway. Writes never patch ``rows`` locally; a successful
write is followed by a fresh read.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import config
import services
from auth import AuthContext
from forms import CourseDraft, Draft, EnrollmentDraft, StudentDraft, parse_draft
from gateway import Gateway, GatewayError, QueryResult, TransportError
from schemas import DashboardStats, EnrollmentOptions

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Could not reach the server. Please try again."


@dataclass
class Notice:
    title: str
    message: str
    destructive: bool = False


class RecordPage:
    """List, search, paginate, create, edit and delete the rows of one table."""

    table: str = ""
    noun: str = "record"
    draft_class: Type[Draft] = Draft

    def __init__(self, gateway: Gateway, auth: AuthContext, page_size: int = config.PAGE_SIZE):
        self.gateway = gateway
        self.auth = auth
        self.page_size = page_size
        self.rows: List[Dict[str, Any]] = []
        self.total_count = 0
        self.page = 1
        self.search = ""
        self.loading = False
        self.notices: List[Notice] = []
        self.dialog_open = False
        self.editing: Optional[Dict[str, Any]] = None
        self.draft = self.draft_class()
        self._generation = 0

    async def fetch(self) -> QueryResult:
        raise NotImplementedError

    async def create(self, data) -> Dict[str, Any]:
        raise NotImplementedError

    async def update(self, record_id: uuid.UUID, data) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    # ----- pagination -----

    @property
    def total_pages(self) -> int:
        return services.total_pages(self.total_count, self.page_size)

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def showing_range(self) -> Tuple[int, int]:
        """1-based positions of the first and last row on screen."""
        if not self.total_count:
            return 0, 0
        first = (self.page - 1) * self.page_size + 1
        return first, min(self.page * self.page_size, self.total_count)

    async def refresh(self) -> None:
        """Re-read the current page; responses overtaken by a newer refresh are dropped."""
        self.auth.require()
        self._generation += 1
        generation = self._generation
        self.loading = True
        try:
            result = await self.fetch()
        except GatewayError as exc:
            if generation == self._generation:
                self.loading = False
                self._report(exc, f"Error loading {self.noun}s")
            return

        if generation != self._generation:
            logger.debug(f"Dropped stale {self.table} response (request {generation} of {self._generation})")
            return

        self.rows = result.data
        self.total_count = result.count or 0
        self.loading = False

        if self.page > 1 and self.page > self.total_pages:
            # rows vanished under the current page (deletes elsewhere)
            self.page = max(self.total_pages, 1)
            await self.refresh()

    async def set_search(self, term: Optional[str]) -> None:
        self.search = term or ""
        self.page = 1
        await self.refresh()

    async def go_to_page(self, page: int) -> None:
        page = max(1, min(page, max(self.total_pages, 1)))
        if page == self.page:
            return
        self.page = page
        await self.refresh()

    async def next_page(self) -> None:
        if self.has_next:
            await self.go_to_page(self.page + 1)

    async def previous_page(self) -> None:
        if self.has_previous:
            await self.go_to_page(self.page - 1)

    # ----- dialog -----

    def open_create(self) -> None:
        self.editing = None
        self.draft = self.draft_class()
        self.dialog_open = True

    def open_edit(self, record: Dict[str, Any]) -> None:
        self.editing = record
        self.draft = self.draft_class.from_record(record)
        self.dialog_open = True

    def close_dialog(self) -> None:
        self.dialog_open = False
        self.editing = None
        self.draft = self.draft_class()

    async def submit(self) -> bool:
        """Validate the draft and write it; returns whether the write went through."""
        self.auth.require()
        schema = self.draft.update_schema if self.editing else self.draft.create_schema
        data, violations = parse_draft(self.draft, schema)
        if violations:
            logger.info(f"Rejected {self.noun} form: {violations}")
            self._notify("Validation Error", violations[0], destructive=True)
            return False

        editing = self.editing
        try:
            if editing:
                await self.update(editing["id"], data)
            else:
                await self.create(data)
        except GatewayError as exc:
            self._report(exc, "Error")
            return False

        action = "updated" if editing else "created"
        self._notify("Success", f"{self.noun.capitalize()} {action} successfully")
        self.close_dialog()
        await self.refresh()
        return True

    async def delete(self, record_id: uuid.UUID, confirm: Callable[[str], bool]) -> bool:
        """Delete after ``confirm`` agrees to the prompt; there is no undo."""
        self.auth.require()
        if not confirm(f"Are you sure you want to delete this {self.noun}?"):
            return False
        try:
            await services.delete_record(self.gateway, self.table, record_id)
        except GatewayError as exc:
            self._report(exc, "Error")
            return False

        self._notify("Success", f"{self.noun.capitalize()} deleted successfully")
        await self.refresh()
        return True

    # ----- notices -----

    def _notify(self, title: str, message: str, destructive: bool = False) -> None:
        self.notices.append(Notice(title, message, destructive))

    def _report(self, exc: GatewayError, title: str) -> None:
        if isinstance(exc, TransportError):
            logger.error(f"{title}: {exc.details or exc.message}")
            message = NETWORK_ERROR_MESSAGE
        else:
            logger.warning(f"{title}: [{exc.code}] {exc.message}")
            message = exc.message
        self._notify(title, message, destructive=True)

    @property
    def last_notice(self) -> Optional[Notice]:
        return self.notices[-1] if self.notices else None


class StudentRegistry(RecordPage):
    table = "students"
    noun = "student"
    draft_class = StudentDraft

    async def fetch(self) -> QueryResult:
        return await services.list_students(self.gateway, self.page, self.search, self.page_size)

    async def create(self, data):
        return await services.create_student(self.gateway, data)

    async def update(self, record_id, data):
        return await services.update_student(self.gateway, record_id, data)


class CourseCatalog(RecordPage):
    table = "courses"
    noun = "course"
    draft_class = CourseDraft

    async def fetch(self) -> QueryResult:
        return await services.list_courses(self.gateway, self.page, self.search, self.page_size)

    async def create(self, data):
        return await services.create_course(self.gateway, data)

    async def update(self, record_id, data):
        return await services.update_course(self.gateway, record_id, data)


class EnrollmentLinker(RecordPage):
    """Enrollments joined with student and course summaries.

    The student and course of an existing enrollment are locked; only grade
    and status can be edited.
    """

    table = "enrollments"
    noun = "enrollment"
    draft_class = EnrollmentDraft

    def __init__(self, gateway: Gateway, auth: AuthContext, page_size: int = config.PAGE_SIZE):
        super().__init__(gateway, auth, page_size)
        self.options = EnrollmentOptions()

    @property
    def selection_locked(self) -> bool:
        return self.editing is not None

    async def load(self) -> None:
        """Load the current page and the dropdown options together."""
        await asyncio.gather(self.refresh(), self.load_options())

    async def load_options(self) -> None:
        self.auth.require()
        self.options = await services.enrollment_options(self.gateway)

    def select_student(self, student_id: uuid.UUID) -> None:
        if self.selection_locked:
            raise ValueError("The student of an existing enrollment cannot be changed")
        self.draft.student_id = student_id

    def select_course(self, course_id: uuid.UUID) -> None:
        if self.selection_locked:
            raise ValueError("The course of an existing enrollment cannot be changed")
        self.draft.course_id = course_id

    async def fetch(self) -> QueryResult:
        return await services.list_enrollments(self.gateway, self.page, self.search, self.page_size)

    async def create(self, data):
        return await services.create_enrollment(self.gateway, data)

    async def update(self, record_id, data):
        return await services.update_enrollment(self.gateway, record_id, data)


class DashboardAggregator:
    """Summary counts for the landing screen."""

    def __init__(self, gateway: Gateway, auth: AuthContext):
        self.gateway = gateway
        self.auth = auth
        self.stats = DashboardStats()
        self.loading = False

    async def load(self) -> DashboardStats:
        self.auth.require()
        self.loading = True
        try:
            self.stats = await services.dashboard_stats(self.gateway)
        finally:
            self.loading = False
        return self.stats
