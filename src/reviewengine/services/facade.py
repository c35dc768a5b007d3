"""
Aggregation facade.

Answers the high-level questions presentation layers ask ("all courses with
statistics", "top N instructors by GPA", "is this course offered this
term") by combining cached batch statistics, term membership sets and
teaching-record badges. Independent store reads for one request are issued
concurrently and joined before composing the result.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, TypeVar

from ..core.cache import StatsMirror, TTLCache, make_cache_key
from ..core.config import Settings
from ..models.schema import (
    Course,
    CourseStats,
    CourseTeachingInfo,
    Instructor,
    InstructorMetrics,
    InstructorStats,
    InstructorTeachingCourse,
    ReviewMetrics,
    TeachingRecord,
    Term,
)
from ..stats.aggregator import (
    BatchAggregator,
    BatchResult,
    emit_by_course,
    emit_by_instructor,
    fetch_capped,
)
from ..stats.calculator import compute_instructor_metrics, compute_review_metrics, rank_by_gpa
from ..store.base import (
    COURSES,
    INSTRUCTORS,
    REVIEWS,
    TEACHING_RECORDS,
    TERMS,
    DocumentStore,
    Equal,
    OrderBy,
    StoreError,
)
from .enrichment import (
    EnrichmentResult,
    TeachingBadges,
    TeachingRecordSet,
    chronological,
    collect,
    course_service_learning,
    course_teaching_languages,
    instructor_teaching_languages,
    load_teaching_records,
    load_valid,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Key namespaces. Review writes drop STATS_PREFIX and VIEW_PREFIX only.
STATS_PREFIX = "stats:"
VIEW_PREFIX = "view:"
REF_PREFIX = "ref:"

# Only the fields aggregation reads
REVIEW_STAT_FIELDS = [
    "id",
    "user_id",
    "course_code",
    "term_code",
    "course_workload",
    "course_difficulties",
    "course_usefulness",
    "course_final_grade",
    "instructor_details",
]


@dataclass(frozen=True)
class TermMembership:
    term_code: Optional[str]
    courses: FrozenSet[str] = field(default_factory=frozenset)
    instructors: FrozenSet[str] = field(default_factory=frozenset)
    complete: bool = True
    truncated: bool = False


class AggregationFacade:
    def __init__(
        self,
        store: DocumentStore,
        cache: TTLCache,
        settings: Settings,
        aggregator: Optional[BatchAggregator] = None,
        mirror: Optional[StatsMirror] = None,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.aggregator = aggregator or BatchAggregator()
        self.mirror = mirror

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking store-backed call in the default executor"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _cached(self, key: str, ttl: int, compute: Callable[[], T]) -> T:
        value, found = self.cache.get(key)
        if found:
            return value
        value = compute()
        self.cache.set(key, value, ttl)
        return value

    # ---- raw batches -------------------------------------------------------

    def _review_batch(self, emit, compute, namespace: str) -> BatchResult:
        # The batch covers every term, so it is keyed by namespace alone
        def build() -> BatchResult:
            fetch = fetch_capped(
                self.store,
                REVIEWS,
                self.settings.max_records,
                fields=REVIEW_STAT_FIELDS,
                order_by=OrderBy("created_at", descending=True),
            )
            return self.aggregator.aggregate(fetch.rows, emit, compute, truncated=fetch.truncated)

        return self._cached(f"{STATS_PREFIX}{namespace}", self.settings.stats_ttl, build)

    def course_stats_batch(self) -> BatchResult:
        return self._review_batch(
            emit_by_course, lambda _, reviews: compute_review_metrics(reviews), "courses"
        )

    def instructor_stats_batch(self) -> BatchResult:
        return self._review_batch(
            emit_by_instructor,
            lambda _, entries: compute_instructor_metrics(entries),
            "instructors",
        )

    # ---- reference data and membership -------------------------------------

    def _courses(self) -> List[Course]:
        def build() -> List[Course]:
            rows = self.store.list(
                COURSES, limit=self.settings.max_records, order_by=OrderBy("course_code")
            )
            return load_valid(Course, rows)

        return self._cached(f"{REF_PREFIX}courses", self.settings.membership_ttl, build)

    def _instructors(self) -> List[Instructor]:
        def build() -> List[Instructor]:
            rows = self.store.list(
                INSTRUCTORS, limit=self.settings.max_records, order_by=OrderBy("name")
            )
            return load_valid(Instructor, rows)

        return self._cached(f"{REF_PREFIX}instructors", self.settings.membership_ttl, build)

    def _terms(self) -> Dict[str, Term]:
        def build() -> Dict[str, Term]:
            rows = self.store.list(
                TERMS, limit=self.settings.max_records, order_by=OrderBy("term_code", descending=True)
            )
            return {term.term_code: term for term in load_valid(Term, rows)}

        return self._cached(f"{REF_PREFIX}terms", self.settings.membership_ttl, build)

    def _teaching_records(self) -> TeachingRecordSet:
        def build() -> TeachingRecordSet:
            # Newest terms first, so a capped fetch loses the oldest records
            fetch = fetch_capped(
                self.store,
                TEACHING_RECORDS,
                self.settings.max_records,
                order_by=OrderBy("term_code", descending=True),
            )
            return TeachingRecordSet(load_teaching_records(fetch.rows), fetch.truncated)

        return self._cached(f"{REF_PREFIX}teaching_records", self.settings.membership_ttl, build)

    def _teaching_records_for(self, field_name: str, value: str) -> TeachingRecordSet:
        def build() -> TeachingRecordSet:
            fetch = fetch_capped(
                self.store,
                TEACHING_RECORDS,
                self.settings.max_records,
                filters=[Equal(field_name, value)],
                order_by=OrderBy("term_code", descending=True),
            )
            return TeachingRecordSet(load_teaching_records(fetch.rows), fetch.truncated)

        key = make_cache_key(f"{REF_PREFIX}teaching_records", **{field_name: value})
        return self._cached(key, self.settings.membership_ttl, build)

    def term_membership(self, term_code: Optional[str]) -> TermMembership:
        """Courses and instructors with a teaching record in term_code"""
        if not term_code:
            return TermMembership(term_code=None)

        def build() -> TermMembership:
            fetch = fetch_capped(
                self.store,
                TEACHING_RECORDS,
                self.settings.max_records,
                filters=[Equal("term_code", term_code)],
                fields=["course_code", "instructor_name"],
            )
            return TermMembership(
                term_code=term_code,
                courses=frozenset(row["course_code"] for row in fetch.rows),
                instructors=frozenset(row["instructor_name"] for row in fetch.rows),
                truncated=fetch.truncated,
            )

        key = make_cache_key(f"{REF_PREFIX}term_membership", term=term_code)
        return self._cached(key, self.settings.membership_ttl, build)

    def _safe_membership(self, term_code: Optional[str]) -> TermMembership:
        try:
            return self.term_membership(term_code)
        except StoreError as e:
            logger.error(f"Failed to load term membership for {term_code}: {e}")
            return TermMembership(term_code=term_code, complete=False)

    def _current_term_from_store(self) -> Optional[str]:
        today = datetime.now()

        def build() -> Optional[str]:
            rows = self.store.list(TERMS, limit=100, order_by=OrderBy("term_code", descending=True))
            for term in load_valid(Term, rows):
                if term.start_date and term.end_date and term.start_date <= today <= term.end_date:
                    return term.term_code
            return None

        key = make_cache_key(f"{REF_PREFIX}current_term", day=today.date().isoformat())
        return self._cached(key, self.settings.membership_ttl, build)

    def _resolve_term(self, term_code: Optional[str]) -> Optional[str]:
        if term_code:
            return term_code
        if self.settings.current_term_code:
            return self.settings.current_term_code
        try:
            return self._current_term_from_store()
        except StoreError as e:
            logger.error(f"Failed to resolve current term: {e}")
            return None

    async def resolve_term(self, term_code: Optional[str] = None) -> Optional[str]:
        """Explicit term, else the configured current term, else the term running today"""
        return await self._run(self._resolve_term, term_code)

    # ---- enrichment --------------------------------------------------------

    def _course_enrichments(self) -> EnrichmentResult[TeachingBadges]:
        def build() -> TeachingBadges:
            teaching = self._teaching_records()
            return TeachingBadges(
                languages=course_teaching_languages(teaching.records),
                service_learning=course_service_learning(teaching.records),
                truncated=teaching.truncated,
            )

        return collect("course_badges", build)

    def _instructor_enrichments(self) -> EnrichmentResult[TeachingBadges]:
        def build() -> TeachingBadges:
            teaching = self._teaching_records()
            return TeachingBadges(
                languages=instructor_teaching_languages(teaching.records),
                truncated=teaching.truncated,
            )

        return collect("instructor_badges", build)

    # ---- composition -------------------------------------------------------

    def _safe_batch(self, load: Callable[[], BatchResult]) -> Tuple[BatchResult, bool]:
        try:
            return load(), False
        except StoreError as e:
            logger.error(f"Failed to aggregate review statistics: {e}")
            return BatchResult(), True

    async def _compose_courses(self, term_code: Optional[str]) -> Tuple[List[CourseStats], bool]:
        term = await self.resolve_term(term_code)
        try:
            courses, (batch, degraded), membership, enrichment = await asyncio.gather(
                self._run(self._courses),
                self._run(self._safe_batch, self.course_stats_batch),
                self._run(self._safe_membership, term),
                self._run(self._course_enrichments),
            )
        except StoreError as e:
            logger.error(f"Failed to load courses: {e}")
            return [], True

        degraded = degraded or not membership.complete
        badges = enrichment.unwrap_or(TeachingBadges())
        teaching_truncated = badges.truncated or membership.truncated
        if batch.truncated:
            logger.warning("Course statistics computed from a truncated review batch")

        items = []
        for course in courses:
            metrics = batch.stats.get(course.course_code, ReviewMetrics())
            items.append(
                CourseStats(
                    **metrics.model_dump(),
                    **course.model_dump(),
                    is_offered_in_current_term=course.course_code in membership.courses,
                    teaching_languages=badges.languages.get(course.course_code, []),
                    service_learning_types=badges.service_learning.get(course.course_code, []),
                    stats_truncated=batch.truncated,
                    teaching_records_truncated=teaching_truncated,
                )
            )
        return items, degraded

    async def _compose_instructors(self, term_code: Optional[str]) -> Tuple[List[InstructorStats], bool]:
        term = await self.resolve_term(term_code)
        try:
            instructors, (batch, degraded), membership, enrichment = await asyncio.gather(
                self._run(self._instructors),
                self._run(self._safe_batch, self.instructor_stats_batch),
                self._run(self._safe_membership, term),
                self._run(self._instructor_enrichments),
            )
        except StoreError as e:
            logger.error(f"Failed to load instructors: {e}")
            return [], True

        degraded = degraded or not membership.complete
        badges = enrichment.unwrap_or(TeachingBadges())
        teaching_truncated = badges.truncated or membership.truncated
        if batch.truncated:
            logger.warning("Instructor statistics computed from a truncated review batch")

        items = []
        for instructor in instructors:
            metrics = batch.stats.get(instructor.name, InstructorMetrics())
            items.append(
                InstructorStats(
                    **metrics.model_dump(),
                    **instructor.model_dump(),
                    is_teaching_in_current_term=instructor.name in membership.instructors,
                    teaching_languages=badges.languages.get(instructor.name, []),
                    stats_truncated=batch.truncated,
                    teaching_records_truncated=teaching_truncated,
                )
            )
        return items, degraded

    async def _view(self, key: str, compose) -> list:
        items, found = self.cache.get(key)
        if found:
            return items
        items, degraded = await compose()
        if degraded:
            # Never cache a result built around a failed read
            return items
        self.cache.set(key, items, self.settings.stats_ttl)
        if self.mirror is not None and self.mirror.enabled:
            await self.mirror.publish(
                key, [item.model_dump(mode="json", by_alias=True) for item in items], self.settings.stats_ttl
            )
        return items

    # ---- public operations -------------------------------------------------

    async def get_courses_with_stats(self, term_code: Optional[str] = None) -> List[CourseStats]:
        key = make_cache_key(f"{VIEW_PREFIX}courses", term=term_code, sort="course_code")
        return await self._view(key, lambda: self._compose_courses(term_code))

    async def get_instructors_with_stats(self, term_code: Optional[str] = None) -> List[InstructorStats]:
        key = make_cache_key(f"{VIEW_PREFIX}instructors", term=term_code, sort="name")
        return await self._view(key, lambda: self._compose_instructors(term_code))

    async def get_course_stats(self, course_code: str, term_code: Optional[str] = None) -> Optional[CourseStats]:
        """One course from the cached course view, None if it is not in the catalogue"""
        for course in await self.get_courses_with_stats(term_code):
            if course.course_code == course_code:
                return course
        return None

    async def get_instructor_stats(self, name: str, term_code: Optional[str] = None) -> Optional[InstructorStats]:
        for instructor in await self.get_instructors_with_stats(term_code):
            if instructor.name == name:
                return instructor
        return None

    async def get_top_courses_by_gpa(self, n: int, min_sample_size: int) -> List[CourseStats]:
        """Top n courses by average GPA, ignoring those with fewer than min_sample_size grades"""
        key = make_cache_key(f"{VIEW_PREFIX}top_courses_gpa", n=n, min_samples=min_sample_size)

        async def compose() -> Tuple[List[CourseStats], bool]:
            items, degraded = await self._compose_courses(None)
            return rank_by_gpa(items, n, min_sample_size), degraded

        return await self._view(key, compose)

    async def get_top_instructors_by_gpa(self, n: int, min_sample_size: int) -> List[InstructorStats]:
        key = make_cache_key(f"{VIEW_PREFIX}top_instructors_gpa", n=n, min_samples=min_sample_size)

        async def compose() -> Tuple[List[InstructorStats], bool]:
            items, degraded = await self._compose_instructors(None)
            return rank_by_gpa(items, n, min_sample_size), degraded

        return await self._view(key, compose)

    async def _teaching_join(
        self, field_name: str, value: str
    ) -> Tuple[List[TeachingRecord], Dict[str, Term], Dict[str, Instructor], Dict[str, Course]]:
        """Teaching records matching field_name == value, newest first, with lookup tables"""
        teaching, terms, instructors, courses = await asyncio.gather(
            self._run(self._teaching_records_for, field_name, value),
            self._run(collect, "terms", self._terms),
            self._run(collect, "instructors", self._instructors),
            self._run(collect, "courses", self._courses),
        )
        records = list(reversed(chronological(teaching.records)))
        return (
            records,
            terms.unwrap_or({}),
            {i.name: i for i in instructors.unwrap_or([])},
            {c.course_code: c for c in courses.unwrap_or([])},
        )

    async def get_course_teaching_info(self, course_code: str) -> List[CourseTeachingInfo]:
        """Who taught course_code in which term, newest term first"""
        try:
            records, terms, instructors, _ = await self._teaching_join("course_code", course_code)
        except StoreError as e:
            logger.error(f"Failed to load teaching records for {course_code}: {e}")
            return []
        return [
            CourseTeachingInfo(
                term=terms.get(r.term_code) or Term(term_code=r.term_code),
                instructor=instructors.get(r.instructor_name) or Instructor(name=r.instructor_name),
                session_type=r.session_type,
                teaching_language=r.teaching_language,
                service_learning=r.service_learning,
            )
            for r in records
        ]

    async def get_instructor_teaching_courses(self, instructor_name: str) -> List[InstructorTeachingCourse]:
        """Courses instructor_name taught, newest term first"""
        try:
            records, terms, _, courses = await self._teaching_join("instructor_name", instructor_name)
        except StoreError as e:
            logger.error(f"Failed to load teaching records for {instructor_name}: {e}")
            return []
        return [
            InstructorTeachingCourse(
                course=courses.get(r.course_code) or Course(course_code=r.course_code),
                term=terms.get(r.term_code) or Term(term_code=r.term_code),
                session_type=r.session_type,
                teaching_language=r.teaching_language,
                service_learning=r.service_learning,
            )
            for r in records
        ]

    async def is_course_offered(self, course_code: str, term_code: Optional[str] = None) -> bool:
        term = await self.resolve_term(term_code)
        membership = await self._run(self._safe_membership, term)
        return course_code in membership.courses

    async def is_instructor_teaching(self, instructor_name: str, term_code: Optional[str] = None) -> bool:
        term = await self.resolve_term(term_code)
        membership = await self._run(self._safe_membership, term)
        return instructor_name in membership.instructors

    def invalidate_review_stats(self) -> int:
        """Drop everything derived from review content; membership sets stay"""
        return self.cache.invalidate_prefix(STATS_PREFIX) + self.cache.invalidate_prefix(VIEW_PREFIX)

    async def invalidate_cache(self) -> int:
        """Administrative reset of every cached and mirrored result"""
        dropped = self.cache.invalidate_all()
        if self.mirror is not None and self.mirror.enabled:
            await self.mirror.clear()
        return dropped
