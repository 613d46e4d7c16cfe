"""
Query gateway over the students, courses and enrollments tables.

Every read and write in the application goes through a ``TableQuery``
built from ``Gateway.table``. Filters, ordering and ranges are collected on
the builder and applied when one of the awaitable terminal methods runs:

    result = await (
        gateway.table("students")
        .select(count=True)
        .ilike_any(("first_name", "last_name"), "ada")
        .order("created_at", descending=True)
        .range(0, 9)
        .execute()
    )

Database failures never escape as SQLAlchemy exceptions. They are rolled
back and re-raised as ``GatewayError`` carrying a SQLSTATE-style ``code``
(``23505`` for unique violations and so on) and a readable ``message``.

The session work of each terminal method runs in the threadpool, one session
per call, so gathered queries overlap.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, or_
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, StatementError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, SQLModel, select

from models import Course, Enrollment, Student, utcnow

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
NOT_NULL_VIOLATION = "23502"
CHECK_VIOLATION = "23514"
CARDINALITY_VIOLATION = "21000"
UNDEFINED_TABLE = "42P01"
UNDEFINED_COLUMN = "42703"
UNDEFINED_RELATIONSHIP = "PGRST200"
CONNECTION_FAILURE = "08006"
INTERNAL_ERROR = "XX000"

TABLES: Dict[str, type] = {
    "students": Student,
    "courses": Course,
    "enrollments": Enrollment,
}

# Fallback for drivers (SQLite) that do not expose a SQLSTATE
_MESSAGE_CODES = (
    ("unique constraint", UNIQUE_VIOLATION),
    ("duplicate key", UNIQUE_VIOLATION),
    ("foreign key constraint", FOREIGN_KEY_VIOLATION),
    ("not null constraint", NOT_NULL_VIOLATION),
    ("not-null constraint", NOT_NULL_VIOLATION),
    ("check constraint", CHECK_VIOLATION),
)

_CODE_MESSAGES = {
    UNIQUE_VIOLATION: "duplicate key value violates unique constraint",
    FOREIGN_KEY_VIOLATION: "insert or update violates foreign key constraint",
    NOT_NULL_VIOLATION: "null value violates not-null constraint",
    CHECK_VIOLATION: "new row violates check constraint",
}


class GatewayError(Exception):
    """A rejected or failed gateway request"""

    def __init__(self, code: str, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class TransportError(GatewayError):
    """The database could not be reached"""

    def __init__(self, message: str = "Could not connect to the database", details: Optional[str] = None):
        super().__init__(CONNECTION_FAILURE, message, details)


@dataclass
class QueryResult:
    data: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _integrity_error(exc: IntegrityError) -> GatewayError:
    detail = str(exc.orig).strip().splitlines()[0] if exc.orig is not None else str(exc)
    code = _sqlstate(exc)
    if code:
        return GatewayError(code, detail, detail)

    lowered = detail.lower()
    code = next((c for needle, c in _MESSAGE_CODES if needle in lowered), INTERNAL_ERROR)
    message = f"{_CODE_MESSAGES[code]} ({detail})" if code in _CODE_MESSAGES else detail
    return GatewayError(code, message, detail)


@contextmanager
def _translated_errors(session: Session, action: str):
    try:
        yield
    except GatewayError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        error = _integrity_error(exc)
        logger.warning(f"{action} rejected [{error.code}]: {error.details}")
        raise error from exc
    except OperationalError as exc:
        session.rollback()
        logger.error(f"{action} failed, database unreachable: {exc.orig}")
        raise TransportError(details=str(exc.orig)) from exc
    except DBAPIError as exc:
        session.rollback()
        if exc.connection_invalidated:
            logger.error(f"{action} failed, connection invalidated: {exc.orig}")
            raise TransportError(details=str(exc.orig)) from exc
        logger.error(f"{action} failed: {exc.orig}", exc_info=True)
        raise GatewayError(_sqlstate(exc) or INTERNAL_ERROR, str(exc.orig), str(exc.orig)) from exc
    except StatementError as exc:
        # raised while binding parameters, before the database sees the row
        session.rollback()
        if isinstance(exc.orig, LookupError):
            # value outside an Enum column's members
            logger.warning(f"{action} rejected: {exc.orig}")
            raise GatewayError(
                CHECK_VIOLATION, f"{_CODE_MESSAGES[CHECK_VIOLATION]} ({exc.orig})", str(exc.orig)
            ) from exc
        logger.error(f"{action} failed binding parameters: {exc.orig}", exc_info=True)
        raise GatewayError(INTERNAL_ERROR, str(exc.orig), str(exc.orig)) from exc


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TableQuery:
    """Builder for one request against one table"""

    def __init__(self, session_factory: Callable[[], Session], name: str, model: type):
        self.session_factory = session_factory
        self.name = name
        self.model = model
        self._columns: Optional[Tuple[str, ...]] = None
        self._count = False
        self._head = False
        self._expand: Dict[str, Tuple[str, ...]] = {}
        self._joins: Dict[str, Any] = {}
        self._conditions: List[Any] = []
        self._order: List[Any] = []
        self._range: Optional[Tuple[int, int]] = None

    # ----- builder -----

    def select(self, *columns: str, count: bool = False, head: bool = False) -> "TableQuery":
        """Project ``columns`` (all when empty); ``count`` adds the exact match count,
        ``head`` skips the rows entirely."""
        for name in columns:
            self._check_column(self.model, name)
        self._columns = tuple(columns) or None
        self._count = count or head
        self._head = head
        return self

    def expand(self, relation: str, *columns: str) -> "TableQuery":
        """Embed the related record (optionally only ``columns`` of it) under ``relation``."""
        target = self._relationship(relation).property.mapper.class_
        for name in columns:
            self._check_column(target, name)
        self._expand[relation] = tuple(columns)
        return self

    def eq(self, field_name: str, value: Any) -> "TableQuery":
        self._conditions.append(self._column(field_name) == value)
        return self

    def ilike_any(self, fields: Iterable[str], term: Optional[str]) -> "TableQuery":
        """Keep rows where any of ``fields`` contains ``term``, ignoring case.

        Dotted names such as ``student.last_name`` search a related table.
        A blank term leaves the query unfiltered.
        """
        if term is None or not term.strip():
            return self
        pattern = f"%{_escape_like(term.strip())}%"
        self._conditions.append(
            or_(*(self._column(name).ilike(pattern, escape="\\") for name in fields))
        )
        return self

    def order(self, field_name: str, descending: bool = False) -> "TableQuery":
        column = self._column(field_name)
        self._order.append(column.desc() if descending else column.asc())
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Restrict to rows ``start`` through ``end`` inclusive (0-based)."""
        if start < 0 or end < start - 1:
            raise GatewayError("PGRST103", f"Requested range not satisfiable: {start}-{end}")
        self._range = (start, end)
        return self

    # ----- terminal operations -----

    async def _run(self, action: str, work: Callable[[Session], Any]) -> Any:
        """Run ``work`` on a worker thread inside a session of its own."""
        def call():
            with self.session_factory() as session, _translated_errors(session, action):
                return work(session)
        return await run_in_threadpool(call)

    async def execute(self) -> QueryResult:
        result = await self._run(f"select from {self.name}", self._select)
        logger.debug(f"select from {self.name}: {len(result.data)} rows, count={result.count}")
        return result

    async def insert(self, records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for record in records:
            for name in record:
                self._check_column(self.model, name)
        return await self._run(f"insert into {self.name}", lambda session: self._insert(session, records))

    async def update(self, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Apply ``values`` to every row matched by the filters."""
        if not self._conditions:
            raise GatewayError(CARDINALITY_VIOLATION, "UPDATE requires a WHERE clause")
        for name in values:
            self._check_column(self.model, name)
        return await self._run(f"update {self.name}", lambda session: self._update(session, values))

    async def delete(self) -> List[Dict[str, Any]]:
        """Delete every row matched by the filters; dependent enrollments go with them."""
        if not self._conditions:
            raise GatewayError(CARDINALITY_VIOLATION, "DELETE requires a WHERE clause")
        return await self._run(f"delete from {self.name}", self._delete)

    # ----- session work -----

    def _select(self, session: Session) -> QueryResult:
        statement = self._statement()
        count = None
        if self._count:
            count = session.exec(select(func.count()).select_from(statement.subquery())).one()

        data: List[Dict[str, Any]] = []
        if not self._head:
            statement = statement.order_by(*self._order, self.model.id)
            for relation in self._expand:
                statement = statement.options(selectinload(getattr(self.model, relation)))
            if self._range is not None:
                start, end = self._range
                statement = statement.offset(start).limit(end - start + 1)
            data = [self._serialize(row) for row in session.exec(statement).all()]
        return QueryResult(data=data, count=count)

    def _insert(self, session: Session, records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        rows = [self.model(**record) for record in records]
        session.add_all(rows)
        session.commit()
        for row in rows:
            session.refresh(row)
        return [self._serialize(row) for row in rows]

    def _update(self, session: Session, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = session.exec(self._statement()).all()
        for row in rows:
            for name, value in values.items():
                setattr(row, name, value)
            if "updated_at" in self.model.__table__.c and "updated_at" not in values:
                row.updated_at = utcnow()
            session.add(row)
        session.commit()
        for row in rows:
            session.refresh(row)
        return [self._serialize(row) for row in rows]

    def _delete(self, session: Session) -> List[Dict[str, Any]]:
        rows = session.exec(self._statement()).all()
        data = [self._serialize(row) for row in rows]
        for row in rows:
            session.delete(row)
        session.commit()
        return data

    # ----- helpers -----

    def _statement(self):
        statement = select(self.model)
        for relation in self._joins.values():
            statement = statement.join(relation)
        if self._conditions:
            statement = statement.where(*self._conditions)
        return statement

    def _relationship(self, name: str):
        if name not in self.model.__mapper__.relationships:
            raise GatewayError(
                UNDEFINED_RELATIONSHIP,
                f"Could not find a relationship between '{self.name}' and '{name}'",
            )
        return getattr(self.model, name)

    def _check_column(self, model: type, name: str) -> None:
        if name not in model.__table__.c:
            raise GatewayError(UNDEFINED_COLUMN, f"column {model.__tablename__}.{name} does not exist")

    def _column(self, field_name: str):
        model, name = self.model, field_name
        if "." in field_name:
            relation, name = field_name.split(".", 1)
            attribute = self._relationship(relation)
            self._joins.setdefault(relation, attribute)
            model = attribute.property.mapper.class_
        self._check_column(model, name)
        return getattr(model, name)

    def _serialize(self, row: SQLModel) -> Dict[str, Any]:
        record = row.model_dump()
        if self._columns:
            record = {name: record[name] for name in self._columns}
        for relation, columns in self._expand.items():
            related = getattr(row, relation)
            if related is None:
                record[relation] = None
                continue
            dumped = related.model_dump()
            record[relation] = {name: dumped[name] for name in columns} if columns else dumped
        return record


class Gateway:
    """Entry point for all persistence.

    Each terminal operation opens its own session from ``session_factory`` on a
    worker thread, so concurrent requests never share a ``Session`` and never
    block the event loop.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def table(self, name: str) -> TableQuery:
        model = TABLES.get(name)
        if model is None:
            raise GatewayError(UNDEFINED_TABLE, f'relation "{name}" does not exist')
        return TableQuery(self.session_factory, name, model)
