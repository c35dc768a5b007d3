"""
Review submission gate.

Eligibility is re-derived on every call from the user's live reviews. This
path never goes through the TTL cache: a stale count could let a user past
the per-course or per-term limit.
"""

import logging
from dataclasses import dataclass

from ..core.config import Settings
from ..models.schema import EligibilityReason, EligibilityResult, Review
from ..stats.grades import FAIL_GRADE, is_fail_grade
from ..store.base import REVIEWS, DocumentStore, Equal, OrderBy, StoreError
from .enrichment import load_valid

logger = logging.getLogger(__name__)

COURSE_REVIEW_FIELDS = [
    "id",
    "user_id",
    "course_code",
    "term_code",
    "course_final_grade",
    "submitted_at",
    "created_at",
]


@dataclass(frozen=True)
class ReviewPolicy:
    term_review_limit: int = 7
    course_review_limit: int = 2
    fail_grade: str = FAIL_GRADE

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReviewPolicy":
        return cls(
            term_review_limit=settings.term_review_limit,
            course_review_limit=settings.course_review_limit,
            fail_grade=settings.fail_grade,
        )


class EligibilityEngine:
    def __init__(self, store: DocumentStore, policy: ReviewPolicy = ReviewPolicy()):
        self.store = store
        self.policy = policy

    def _term_review_count(self, user_id: str, term_code: str) -> int:
        rows = self.store.list(
            REVIEWS,
            filters=[Equal("user_id", user_id), Equal("term_code", term_code)],
            limit=self.policy.term_review_limit,
            fields=["id"],
        )
        return len(rows)

    def _course_reviews(self, user_id: str, course_code: str) -> list:
        rows = self.store.list(
            REVIEWS,
            filters=[Equal("user_id", user_id), Equal("course_code", course_code)],
            limit=self.policy.course_review_limit,
            fields=COURSE_REVIEW_FIELDS,
            order_by=OrderBy("created_at"),
        )
        return load_valid(Review, rows)

    def check(self, user_id: str, course_code: str, term_code: str) -> EligibilityResult:
        """
        Decide whether user_id may submit a review of course_code in term_code.

        Rules, in order:
        1. term_review_limit reviews already in the term -> term-limit-exceeded
        2. no review of the course in any term -> allowed
        3. course_review_limit or more reviews of the course -> course-limit-exceeded
        4. exactly one review: allowed only if it recorded the fail grade,
           otherwise limit-reached-with-pass

        If the store cannot be read the check fails open.
        """
        try:
            term_count = self._term_review_count(user_id, term_code)
            if term_count >= self.policy.term_review_limit:
                return EligibilityResult(
                    allowed=False, reason=EligibilityReason.TERM_LIMIT_EXCEEDED
                )

            existing = self._course_reviews(user_id, course_code)
        except StoreError as e:
            logger.error(
                f"Eligibility check failed for user {user_id} on {course_code} ({term_code}), allowing: {e}"
            )
            return EligibilityResult(allowed=True, reason=EligibilityReason.CHECK_FAILED_OPEN)

        if not existing:
            return EligibilityResult(allowed=True)

        if len(existing) >= self.policy.course_review_limit:
            return EligibilityResult(
                allowed=False,
                reason=EligibilityReason.COURSE_LIMIT_EXCEEDED,
                existing_reviews=existing,
            )

        if is_fail_grade(existing[0].course_final_grade, self.policy.fail_grade):
            return EligibilityResult(allowed=True, existing_reviews=existing)

        return EligibilityResult(
            allowed=False,
            reason=EligibilityReason.LIMIT_REACHED_WITH_PASS,
            existing_reviews=existing,
        )

    def check_grade_change(self, review: Review, new_grade: str) -> EligibilityResult:
        """
        Decide whether review's grade may be changed to new_grade.

        A failed first attempt is what allowed the retake review, so once the
        course limit is reached the oldest review may not be edited from the
        fail grade to a pass. Every other grade edit is allowed, and a store
        failure fails open like check().
        """
        fail_grade = self.policy.fail_grade
        if not is_fail_grade(review.course_final_grade, fail_grade) or is_fail_grade(new_grade, fail_grade):
            return EligibilityResult(allowed=True)

        try:
            existing = self._course_reviews(review.user_id, review.course_code)
        except StoreError as e:
            logger.error(f"Grade edit check failed for review {review.id}, allowing: {e}")
            return EligibilityResult(allowed=True, reason=EligibilityReason.CHECK_FAILED_OPEN)

        if len(existing) >= self.policy.course_review_limit and existing[0].id == review.id:
            return EligibilityResult(
                allowed=False,
                reason=EligibilityReason.RETAKE_GRADE_LOCKED,
                existing_reviews=existing,
            )
        return EligibilityResult(allowed=True, existing_reviews=existing)
