"""
Review lifecycle: submission behind the eligibility gate, edits, deletion
with votes, voting, listings and author-name backfill. Every write to a
review drops cached review-derived statistics.
"""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..models.schema import EligibilityReason, InstructorDetail, Review, ReviewVote, ReviewWithVotes, VoteType
from ..stats.aggregator import RecordShapeError, fetch_capped, load_review
from ..stats.grades import is_known_grade
from ..store.base import REVIEW_VOTES, REVIEWS, DocumentNotFoundError, DocumentStore, Equal, In, OrderBy
from .eligibility import COURSE_REVIEW_FIELDS, EligibilityEngine
from .facade import AggregationFacade

logger = logging.getLogger(__name__)

# Upper bound on votes / reviews touched by one cascade
MAX_CASCADE = 1000

# Fields a review edit may change
EDITABLE_FIELDS = {
    "is_anon",
    "course_workload",
    "course_difficulties",
    "course_usefulness",
    "course_final_grade",
    "course_comments",
    "instructor_details",
}


class ReviewNotAllowedError(Exception):
    def __init__(self, reason: Optional[EligibilityReason]):
        self.reason = reason
        super().__init__(f"Review not allowed: {reason.value if reason else 'unknown'}")


class InvalidReviewError(ValueError):
    """Submitted review content is not acceptable"""


class ReviewService:
    def __init__(
        self,
        store: DocumentStore,
        eligibility: EligibilityEngine,
        facade: AggregationFacade,
    ):
        self.store = store
        self.eligibility = eligibility
        self.facade = facade
        self.max_records = facade.settings.max_records

    def _validate(self, review: Review) -> None:
        if not is_known_grade(review.course_final_grade):
            raise InvalidReviewError(f"Unknown grade: {review.course_final_grade!r}")

    def submit_review(self, review: Review) -> Review:
        """Create a review if the user is still eligible for this course and term"""
        self._validate(review)
        result = self.eligibility.check(review.user_id, review.course_code, review.term_code)
        if not result.allowed:
            logger.info(
                f"Rejected review from {review.user_id} for {review.course_code} ({review.term_code}): {result.reason.value}"
            )
            raise ReviewNotAllowedError(result.reason)

        document = review.to_document()
        document["submitted_at"] = document.get("submitted_at") or datetime.now()
        created = Review.model_validate(self.store.create(REVIEWS, document))
        self.facade.invalidate_review_stats()
        logger.info(f"Created review {created.id} for {created.course_code} ({created.term_code})")
        return created

    def _review_header(self, review_id: str) -> Review:
        rows = self.store.list(REVIEWS, filters=[Equal("id", review_id)], limit=1, fields=COURSE_REVIEW_FIELDS)
        if not rows:
            raise DocumentNotFoundError(f"{REVIEWS}/{review_id} not found")
        return Review.model_validate(rows[0])

    def update_review(self, review_id: str, patch: dict) -> Review:
        changes = {k: v for k, v in patch.items() if k in EDITABLE_FIELDS}
        if "course_final_grade" in changes and not is_known_grade(changes["course_final_grade"]):
            raise InvalidReviewError(f"Unknown grade: {changes['course_final_grade']!r}")
        if "course_final_grade" in changes:
            current = self._review_header(review_id)
            result = self.eligibility.check_grade_change(current, changes["course_final_grade"])
            if not result.allowed:
                logger.info(f"Rejected grade edit on review {review_id}: {result.reason.value}")
                raise ReviewNotAllowedError(result.reason)
        if "instructor_details" in changes:
            # Stored JSON is always produced from validated details
            changes["instructor_details"] = json.dumps(
                [InstructorDetail.model_validate(d).model_dump(mode="json") for d in changes["instructor_details"]]
            )
        updated = Review.model_validate(self.store.update(REVIEWS, review_id, changes))
        self.facade.invalidate_review_stats()
        return updated

    def delete_review(self, review_id: str) -> int:
        """Delete a review and its votes, returning the number of votes removed"""
        # Raises DocumentNotFoundError before any vote is touched
        self.store.get(REVIEWS, review_id)
        votes = self.store.list(
            REVIEW_VOTES, filters=[Equal("review_id", review_id)], limit=MAX_CASCADE, fields=["id"]
        )
        for vote in votes:
            self.store.delete(REVIEW_VOTES, vote["id"])
        self.store.delete(REVIEWS, review_id)
        self.facade.invalidate_review_stats()
        logger.info(f"Deleted review {review_id} with {len(votes)} vote(s)")
        return len(votes)

    def _user_vote(self, review_id: str, user_id: str) -> Optional[ReviewVote]:
        rows = self.store.list(
            REVIEW_VOTES,
            filters=[Equal("review_id", review_id), Equal("user_id", user_id)],
            limit=1,
        )
        return ReviewVote.model_validate(rows[0]) if rows else None

    def vote(self, review_id: str, user_id: str, vote_type: VoteType) -> ReviewVote:
        """Cast a vote, or switch an existing one"""
        self.store.get(REVIEWS, review_id)
        existing = self._user_vote(review_id, user_id)
        now = datetime.now()
        if existing is None:
            row = self.store.create(
                REVIEW_VOTES,
                {"review_id": review_id, "user_id": user_id, "vote_type": vote_type.value, "voted_at": now},
            )
            return ReviewVote.model_validate(row)
        if existing.vote_type != vote_type:
            row = self.store.update(REVIEW_VOTES, existing.id, {"vote_type": vote_type.value, "voted_at": now})
            return ReviewVote.model_validate(row)
        return existing

    def remove_vote(self, review_id: str, user_id: str) -> bool:
        existing = self._user_vote(review_id, user_id)
        if existing is None:
            return False
        self.store.delete(REVIEW_VOTES, existing.id)
        return True

    def vote_counts(self, review_id: str) -> dict:
        rows = self.store.list(
            REVIEW_VOTES, filters=[Equal("review_id", review_id)], limit=MAX_CASCADE, fields=["vote_type"]
        )
        upvotes = sum(1 for row in rows if row["vote_type"] == VoteType.UP.value)
        return {"upvotes": upvotes, "downvotes": len(rows) - upvotes}

    def backfill_author_name(self, user_id: str, new_name: str) -> int:
        """Rewrite the display name on a user's reviews after a rename"""
        rows = self.store.list(
            REVIEWS, filters=[Equal("user_id", user_id)], limit=MAX_CASCADE, fields=["id", "username"]
        )
        updated = 0
        for row in rows:
            if row["username"] != new_name:
                self.store.update(REVIEWS, row["id"], {"username": new_name})
                updated += 1
        if updated:
            self.facade.invalidate_review_stats()
        logger.info(f"Backfilled author name on {updated} review(s) for user {user_id}")
        return updated

    # ---- listings ----------------------------------------------------------

    def _load_reviews(self, rows: Iterable[dict]) -> List[Review]:
        reviews = []
        for row in rows:
            try:
                reviews.append(load_review(row))
            except RecordShapeError as e:
                logger.warning(f"Skipping review in listing: {e}")
        return reviews

    def _with_votes(self, reviews: List[Review], user_id: Optional[str] = None) -> List[ReviewWithVotes]:
        """Attach vote tallies, and user_id's own vote, using one votes query"""
        if not reviews:
            return []
        votes = fetch_capped(
            self.store,
            REVIEW_VOTES,
            self.max_records,
            filters=[In("review_id", [r.id for r in reviews])],
            fields=["review_id", "user_id", "vote_type"],
        ).rows

        tallies: Dict[str, Dict[str, int]] = {}
        own: Dict[str, VoteType] = {}
        for vote in votes:
            tally = tallies.setdefault(vote["review_id"], {VoteType.UP.value: 0, VoteType.DOWN.value: 0})
            tally[vote["vote_type"]] = tally.get(vote["vote_type"], 0) + 1
            if user_id is not None and vote["user_id"] == user_id:
                own[vote["review_id"]] = VoteType(vote["vote_type"])

        results = []
        for review in reviews:
            tally = tallies.get(review.id, {})
            results.append(
                ReviewWithVotes(
                    **review.model_dump(),
                    upvotes=tally.get(VoteType.UP.value, 0),
                    downvotes=tally.get(VoteType.DOWN.value, 0),
                    user_vote=own.get(review.id),
                )
            )
        return results

    def course_reviews_with_votes(self, course_code: str, user_id: Optional[str] = None) -> List[ReviewWithVotes]:
        """Reviews of a course, newest first"""
        rows = fetch_capped(
            self.store,
            REVIEWS,
            self.max_records,
            filters=[Equal("course_code", course_code)],
            order_by=OrderBy("created_at", descending=True),
        ).rows
        return self._with_votes(self._load_reviews(rows), user_id)

    def instructor_reviews_with_votes(self, instructor_name: str, user_id: Optional[str] = None) -> List[ReviewWithVotes]:
        """
        Reviews naming instructor_name, newest first.

        Instructor details are embedded in the review, so this scans the
        capped review batch. Each returned review keeps only the details
        for this instructor.
        """
        rows = fetch_capped(
            self.store,
            REVIEWS,
            self.max_records,
            order_by=OrderBy("created_at", descending=True),
        ).rows
        matching = []
        for review in self._load_reviews(rows):
            details = [d for d in review.instructor_details if d.instructor_name == instructor_name]
            if details:
                matching.append(review.model_copy(update={"instructor_details": details}))
        return self._with_votes(matching, user_id)

    def user_reviews(self, user_id: str) -> List[ReviewWithVotes]:
        rows = fetch_capped(
            self.store,
            REVIEWS,
            self.max_records,
            filters=[Equal("user_id", user_id)],
            order_by=OrderBy("created_at", descending=True),
        ).rows
        return self._with_votes(self._load_reviews(rows), user_id)
