import sys
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Generator, Iterable, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure src is in python path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from reviewengine.api.main import create_app  # noqa: E402
from reviewengine.core.cache import TTLCache  # noqa: E402
from reviewengine.core.config import Settings  # noqa: E402
from reviewengine.models.schema import InstructorDetail, Review  # noqa: E402
from reviewengine.services.facade import AggregationFacade  # noqa: E402
from reviewengine.store.base import (  # noqa: E402
    COURSES,
    INSTRUCTORS,
    REVIEWS,
    TEACHING_RECORDS,
    TERMS,
    DocumentStore,
    StoreError,
)
from reviewengine.store.sql import SqlDocumentStore, create_db_engine  # noqa: E402

CURRENT_TERM = "2025-26-T1"
BASE_TIME = datetime(2025, 9, 1, 9, 0, 0)


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(DocumentStore):
    """
    Wraps a store and raises StoreError for the listed collections.
    With no collections listed every call fails.
    """

    def __init__(self, inner: Optional[DocumentStore] = None, collections: Iterable[str] = ()):
        self.inner = inner
        self.collections = set(collections)
        self.calls = 0
        self.list_calls: Counter = Counter()

    def _check(self, collection: str) -> None:
        self.calls += 1
        if self.inner is None or not self.collections or collection in self.collections:
            raise StoreError(f"{collection} unavailable")

    def list(self, collection, filters=(), limit=100, fields=None, order_by=None):
        self.list_calls[collection] += 1
        self._check(collection)
        return self.inner.list(collection, filters=filters, limit=limit, fields=fields, order_by=order_by)

    def get(self, collection, document_id):
        self._check(collection)
        return self.inner.get(collection, document_id)

    def create(self, collection, document):
        self._check(collection)
        return self.inner.create(collection, document)

    def update(self, collection, document_id, patch):
        self._check(collection)
        return self.inner.update(collection, document_id, patch)

    def delete(self, collection, document_id):
        self._check(collection)
        return self.inner.delete(collection, document_id)


class CountingStore(FailingStore):
    """Delegates every call, counting list() calls per collection"""

    def __init__(self, inner: DocumentStore):
        super().__init__(inner)

    def _check(self, collection: str) -> None:
        self.calls += 1


class InjectingStore(CountingStore):
    """Appends extra raw rows to every list() of one collection"""

    def __init__(self, inner: DocumentStore, collection: str, rows: Iterable[dict]):
        super().__init__(inner)
        self.target = collection
        self.extra_rows = list(rows)

    def list(self, collection, filters=(), limit=100, fields=None, order_by=None):
        rows = super().list(collection, filters=filters, limit=limit, fields=fields, order_by=order_by)
        if collection == self.target:
            rows = rows + self.extra_rows
        return rows


class Seeder:
    """Writes fixture documents straight into a store"""

    def __init__(self, store: DocumentStore):
        self.store = store
        self._tick = 0

    def _next_time(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(minutes=self._tick)

    def course(self, course_code: str, title: str = "", **extra: Any) -> dict:
        return self.store.create(COURSES, {"course_code": course_code, "course_title": title or course_code, **extra})

    def instructor(self, name: str, **extra: Any) -> dict:
        return self.store.create(INSTRUCTORS, {"name": name, **extra})

    def term(self, term_code: str, start: datetime, end: datetime, name: str = "") -> dict:
        return self.store.create(TERMS, {"term_code": term_code, "name": name, "start_date": start, "end_date": end})

    def teaching(
        self,
        course_code: str,
        instructor_name: str,
        term_code: str = CURRENT_TERM,
        language: Optional[str] = None,
        service_learning: Optional[str] = None,
        session_type: str = "Lecture",
        created_at: Optional[datetime] = None,
    ) -> dict:
        return self.store.create(
            TEACHING_RECORDS,
            {
                "course_code": course_code,
                "term_code": term_code,
                "instructor_name": instructor_name,
                "session_type": session_type,
                "teaching_language": language,
                "service_learning": service_learning,
                "created_at": created_at or self._next_time(),
            },
        )

    def review(
        self,
        user_id: str,
        course_code: str,
        term_code: str = CURRENT_TERM,
        grade: str = "B",
        workload: Optional[int] = 3,
        difficulty: Optional[int] = 3,
        usefulness: Optional[int] = 3,
        instructors: Iterable[Any] = (),
    ) -> dict:
        details = []
        for instructor in instructors:
            if isinstance(instructor, str):
                instructor = {"instructor_name": instructor, "teaching": 4, "grading": 4}
            details.append(InstructorDetail.model_validate(instructor))
        review = Review(
            user_id=user_id,
            username=f"user-{user_id}",
            course_code=course_code,
            term_code=term_code,
            course_workload=workload,
            course_difficulties=difficulty,
            course_usefulness=usefulness,
            course_final_grade=grade,
            instructor_details=details,
        )
        document = review.to_document()
        created_at = self._next_time()
        document["submitted_at"] = created_at
        document["created_at"] = created_at
        return self.store.create(REVIEWS, document)


@pytest.fixture
def store(tmp_path: Path) -> SqlDocumentStore:
    # File database so executor threads each get their own connection
    engine = create_db_engine(f"sqlite:///{tmp_path / 'reviews.db'}")
    return SqlDocumentStore(engine)


@pytest.fixture
def seed(store: SqlDocumentStore) -> Seeder:
    return Seeder(store)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        redis_url=None,
        current_term_code=CURRENT_TERM,
        default_min_sample_size=1,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> TTLCache:
    return TTLCache(clock=clock)


@pytest.fixture
def facade(store: SqlDocumentStore, cache: TTLCache, settings: Settings) -> AggregationFacade:
    return AggregationFacade(store, cache, settings)


@pytest.fixture
def client(store: SqlDocumentStore, settings: Settings) -> Generator[TestClient, None, None]:
    with TestClient(create_app(settings=settings, store=store)) as c:
        yield c
