"""
Letter grade -> grade point conversion.

This is the only place that decides whether a grade counts towards a GPA.
Non-substantive tokens (withdrawn, pass/fail, audit, incomplete, ...) are
reported as invalid and must be left out of averages, never counted as 0.
"""

from typing import NamedTuple, Optional


class GradePoints(NamedTuple):
    points: float
    is_valid: bool


FAIL_GRADE = "F"

# Standard Hong Kong university grading scale
GRADE_POINTS: dict[str, float] = {
    "A+": 4.30,
    "A": 4.00,
    "A-": 3.67,
    "B+": 3.33,
    "B": 3.00,
    "B-": 2.67,
    "C+": 2.33,
    "C": 2.00,
    "C-": 1.67,
    "D+": 1.33,
    "D": 1.00,
    FAIL_GRADE: 0.00,
}

# Recognised on a review but carry no grade points
NON_GRADE_TOKENS = frozenset(
    {
        "I",  # Incomplete
        "M",  # Merit
        "VS",  # Very Satisfactory
        "S",  # Satisfactory
        "U",  # Unsatisfactory
        "P",  # Pass
        "W",  # Withdrawn
        "AU",  # Audit
        "N/A",
        "PASS/FAIL",
        "WITHDRAWN",
    }
)

_INVALID = GradePoints(0.0, False)


def normalize_grade(letter_grade: Optional[str]) -> str:
    if not letter_grade:
        return ""
    return letter_grade.strip().upper()


def grade_points(letter_grade: Optional[str]) -> GradePoints:
    """
    Convert a letter grade to grade points.

    Args:
        letter_grade: Grade token as entered on a review (e.g. 'A-', ' b+ ', 'W')

    Returns:
        GradePoints(points, is_valid). is_valid is False for every token
        outside the substantive A+..F scale.
    """
    points = GRADE_POINTS.get(normalize_grade(letter_grade))
    if points is None:
        return _INVALID
    return GradePoints(points, True)


def is_known_grade(letter_grade: Optional[str]) -> bool:
    """True for any token a review may carry, graded or not"""
    token = normalize_grade(letter_grade)
    return token in GRADE_POINTS or token in NON_GRADE_TOKENS


def is_fail_grade(letter_grade: Optional[str], fail_grade: str = FAIL_GRADE) -> bool:
    return normalize_grade(letter_grade) == normalize_grade(fail_grade)
