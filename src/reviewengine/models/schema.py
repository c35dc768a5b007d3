import json
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


NOT_APPLICABLE = -1


class ServiceLearningType(str, Enum):
    COMPULSORY = "compulsory"
    OPTIONAL = "optional"


class VoteType(str, Enum):
    UP = "up"
    DOWN = "down"


class EligibilityReason(str, Enum):
    TERM_LIMIT_EXCEEDED = "term-limit-exceeded"
    COURSE_LIMIT_EXCEEDED = "course-limit-exceeded"
    LIMIT_REACHED_WITH_PASS = "limit-reached-with-pass"
    CHECK_FAILED_OPEN = "check-failed-open"
    RETAKE_GRADE_LOCKED = "retake-grade-locked"


class InstructorDetail(BaseModel):
    """One instructor's part of a review, stored embedded in the review document"""

    instructor_name: str
    session_type: str = ""
    teaching: Optional[int] = None
    grading: Optional[int] = None
    has_midterm: bool = False
    has_final: bool = False
    has_quiz: bool = False
    has_group_project: bool = False
    has_individual_assignment: bool = False
    has_presentation: bool = False
    has_reading: bool = False
    has_attendance_requirement: bool = False
    has_service_learning: bool = False
    service_learning_type: Optional[ServiceLearningType] = None
    service_learning_description: Optional[str] = None
    comments: str = ""

    model_config = ConfigDict(extra="ignore")


class Review(BaseModel):
    """Review model - matches the reviews table, instructor_details parsed from JSON"""

    id: Optional[str] = None
    user_id: str
    is_anon: bool = False
    username: str = ""
    course_code: str
    term_code: str
    course_workload: Optional[int] = None
    course_difficulties: Optional[int] = None
    course_usefulness: Optional[int] = None
    course_final_grade: str = ""
    course_comments: str = ""
    instructor_details: List[InstructorDetail] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("instructor_details", mode="before")
    @classmethod
    def parse_instructor_details(cls, v: Any) -> Any:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            # json.JSONDecodeError is a ValueError, so pydantic reports it as a ValidationError
            return json.loads(v)
        return v

    def to_document(self) -> dict:
        """Flatten into the column layout the store expects"""
        data = self.model_dump(exclude={"id", "created_at", "instructor_details"})
        data["instructor_details"] = json.dumps(
            [detail.model_dump(mode="json") for detail in self.instructor_details]
        )
        return data


class TeachingRecord(BaseModel):
    """A fact: instructor taught course in term"""

    id: Optional[str] = None
    course_code: str
    term_code: str
    instructor_name: str
    session_type: str = ""
    teaching_language: Optional[str] = None
    service_learning: Optional[ServiceLearningType] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


class Course(BaseModel):
    course_code: str
    course_title: str = ""
    course_title_tc: Optional[str] = None
    course_title_sc: Optional[str] = None
    course_department: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class Instructor(BaseModel):
    name: str
    name_tc: Optional[str] = None
    name_sc: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class Term(BaseModel):
    term_code: str
    name: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


class ReviewMetrics(BaseModel):
    """
    Statistics derived from a set of reviews.

    Averages are None when no entry carried a usable value, so "no data"
    never renders as a rating of 0. average_gpa is 0.0 exactly when
    average_gpa_count is 0.
    """

    review_count: int = 0
    student_count: int = 0
    average_workload: Optional[float] = None
    average_difficulty: Optional[float] = None
    average_usefulness: Optional[float] = None
    average_gpa: float = 0.0
    average_gpa_count: int = 0

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InstructorMetrics(ReviewMetrics):
    teaching_score: Optional[float] = None
    grading_fairness: Optional[float] = None


class CourseStats(ReviewMetrics):
    """Course view model served to presentation layers"""

    course_code: str
    course_title: str = ""
    course_title_tc: Optional[str] = None
    course_title_sc: Optional[str] = None
    course_department: Optional[str] = None
    is_offered_in_current_term: bool = False
    teaching_languages: List[str] = Field(default_factory=list)
    service_learning_types: List[str] = Field(default_factory=list)
    stats_truncated: bool = False
    teaching_records_truncated: bool = False


class InstructorStats(InstructorMetrics):
    """Instructor view model served to presentation layers"""

    name: str
    name_tc: Optional[str] = None
    name_sc: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    is_teaching_in_current_term: bool = False
    teaching_languages: List[str] = Field(default_factory=list)
    stats_truncated: bool = False
    teaching_records_truncated: bool = False


class EligibilityResult(BaseModel):
    allowed: bool
    reason: Optional[EligibilityReason] = None
    existing_reviews: List[Review] = Field(default_factory=list)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReviewVote(BaseModel):
    id: Optional[str] = None
    review_id: str
    user_id: str
    vote_type: VoteType
    voted_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


class ReviewWithVotes(Review):
    upvotes: int = 0
    downvotes: int = 0
    user_vote: Optional[VoteType] = None


class CourseTeachingInfo(BaseModel):
    """One teaching record of a course, joined with its term and instructor"""

    term: Term
    instructor: Instructor
    session_type: str = ""
    teaching_language: Optional[str] = None
    service_learning: Optional[ServiceLearningType] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InstructorTeachingCourse(BaseModel):
    course: Course
    term: Term
    session_type: str = ""
    teaching_language: Optional[str] = None
    service_learning: Optional[ServiceLearningType] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
