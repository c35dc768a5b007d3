"""
Secondary enrichment derived from teaching records.

Badges (teaching languages, service-learning types) are optional extras on
top of the statistics. Lookups return an EnrichmentResult instead of
raising, and the facade merges a failed result as an empty default.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..models.schema import TeachingRecord
from ..store.base import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

Badges = Dict[str, List[str]]


@dataclass(frozen=True)
class EnrichmentResult(Generic[T]):
    name: str
    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, name: str, value: T) -> "EnrichmentResult[T]":
        return cls(name=name, value=value)

    @classmethod
    def failure(cls, name: str, error: Exception) -> "EnrichmentResult[T]":
        return cls(name=name, error=error)

    def unwrap_or(self, default: T) -> T:
        if self.error is not None:
            logger.warning(f"Enrichment '{self.name}' unavailable, using defaults: {self.error}")
            return default
        return self.value  # type: ignore[return-value]


def load_valid(model: Type[M], rows: Iterable[dict]) -> List[M]:
    """Validate rows into model, skipping and logging the ones that do not fit"""
    items = []
    for row in rows:
        try:
            items.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__} {row.get('id', '?')}: {e.error_count()} error(s)")
    return items


def load_teaching_records(rows: Iterable[dict]) -> List[TeachingRecord]:
    return load_valid(TeachingRecord, rows)


@dataclass(frozen=True)
class TeachingRecordSet:
    records: List[TeachingRecord] = field(default_factory=list)
    truncated: bool = False


@dataclass(frozen=True)
class TeachingBadges:
    """Badges for one view, and whether the records behind them were capped"""

    languages: Badges = field(default_factory=dict)
    service_learning: Badges = field(default_factory=dict)
    truncated: bool = False


def chronological(records: Iterable[TeachingRecord]) -> List[TeachingRecord]:
    """Oldest first: by term code, then insertion time"""
    return sorted(records, key=lambda r: (r.term_code, r.created_at or datetime.min))


def first_seen(
    records: Iterable[TeachingRecord],
    key: Callable[[TeachingRecord], str],
    value: Callable[[TeachingRecord], Optional[str]],
) -> Badges:
    """
    Distinct values per key in chronological first-seen order.

    Records are put in chronological order here, so the result does not
    depend on the order the store returned them in.
    """
    badges: Badges = {}
    for record in chronological(records):
        v = value(record)
        if not v:
            continue
        seen = badges.setdefault(key(record), [])
        if v not in seen:
            seen.append(v)
    return badges


def _service_learning_value(record: TeachingRecord) -> Optional[str]:
    return record.service_learning.value if record.service_learning else None


def course_teaching_languages(records: Iterable[TeachingRecord]) -> Badges:
    return first_seen(records, lambda r: r.course_code, lambda r: r.teaching_language)


def course_service_learning(records: Iterable[TeachingRecord]) -> Badges:
    return first_seen(records, lambda r: r.course_code, _service_learning_value)


def instructor_teaching_languages(records: Iterable[TeachingRecord]) -> Badges:
    return first_seen(records, lambda r: r.instructor_name, lambda r: r.teaching_language)


def collect(
    name: str, build: Callable[[], T], expected: tuple = (StoreError, ValueError)
) -> EnrichmentResult[T]:
    """Run build, capturing the listed failures as a failed result"""
    try:
        return EnrichmentResult.success(name, build())
    except expected as e:
        return EnrichmentResult.failure(name, e)
