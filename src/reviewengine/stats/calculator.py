"""
Per-entity statistics over review slices.

All functions are pure transforms: no store access, no caching.
"""

from typing import Iterable, List, NamedTuple, Optional, Sequence, TypeVar

from ..models.schema import (
    NOT_APPLICABLE,
    InstructorDetail,
    InstructorMetrics,
    Review,
    ReviewMetrics,
)
from .grades import grade_points

MIN_RATING = 1  # 0 is how an unanswered rating is stored
MAX_RATING = 5


class InstructorEntry(NamedTuple):
    """A review paired with one of its instructor details"""

    review: Review
    detail: InstructorDetail


def is_valid_rating(value: Optional[int]) -> bool:
    if value is None or value == NOT_APPLICABLE:
        return False
    return MIN_RATING <= value <= MAX_RATING


def mean_of_valid(values: Iterable[Optional[int]]) -> Optional[float]:
    """Mean over usable ratings, None when there are none"""
    valid = [v for v in values if is_valid_rating(v)]
    if not valid:
        return None
    return sum(valid) / len(valid)


def gpa_summary(grades: Iterable[Optional[str]]) -> tuple[float, int]:
    """Mean grade points and the number of grades that produced it"""
    points = []
    for grade in grades:
        converted = grade_points(grade)
        if converted.is_valid:
            points.append(converted.points)
    if not points:
        return 0.0, 0
    return sum(points) / len(points), len(points)


def _review_fields(reviews: Sequence[Review]) -> dict:
    average_gpa, average_gpa_count = gpa_summary(r.course_final_grade for r in reviews)
    return {
        "review_count": len(reviews),
        "student_count": len({r.user_id for r in reviews}),
        "average_workload": mean_of_valid(r.course_workload for r in reviews),
        "average_difficulty": mean_of_valid(r.course_difficulties for r in reviews),
        "average_usefulness": mean_of_valid(r.course_usefulness for r in reviews),
        "average_gpa": average_gpa,
        "average_gpa_count": average_gpa_count,
    }


def compute_review_metrics(reviews: Sequence[Review]) -> ReviewMetrics:
    """Course-level metrics for reviews already narrowed to one course"""
    return ReviewMetrics(**_review_fields(reviews))


def compute_instructor_metrics(entries: Sequence[InstructorEntry]) -> InstructorMetrics:
    """
    Instructor-level metrics.

    Each entry counts once, so a review naming the same instructor for two
    sessions (e.g. lecture and tutorial) contributes two entries.
    """
    reviews = [entry.review for entry in entries]
    return InstructorMetrics(
        **_review_fields(reviews),
        teaching_score=mean_of_valid(entry.detail.teaching for entry in entries),
        grading_fairness=mean_of_valid(entry.detail.grading for entry in entries),
    )


M = TypeVar("M", bound=ReviewMetrics)


def rank_by_gpa(items: Iterable[M], n: int, min_sample_size: int) -> List[M]:
    """
    Top n items by average GPA.

    Items with fewer than min_sample_size graded reviews are dropped. Ties
    are broken by review count, then input order.
    """
    eligible = [
        item
        for item in items
        if item.average_gpa_count > 0 and item.average_gpa_count >= min_sample_size
    ]
    ranked = sorted(
        eligible, key=lambda item: (item.average_gpa, item.review_count), reverse=True
    )
    return ranked[: max(n, 0)]
