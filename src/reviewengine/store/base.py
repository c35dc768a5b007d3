"""
Document store abstraction.

The engine only needs equality and "value in set" filters, ordering by a
single field, a row cap and a field projection. Backends translate any
failure into StoreError so callers have one exception type to recover from.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

REVIEWS = "reviews"
REVIEW_VOTES = "review_votes"
TEACHING_RECORDS = "teaching_records"
COURSES = "courses"
INSTRUCTORS = "instructors"
TERMS = "terms"


class StoreError(Exception):
    """A read or write against the backing store failed"""


class DocumentNotFoundError(StoreError):
    """The addressed document does not exist"""


@dataclass(frozen=True)
class Equal:
    field: str
    value: Any


@dataclass(frozen=True)
class In:
    field: str
    values: Sequence[Any]


Filter = Union[Equal, In]


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


class DocumentStore(ABC):
    @abstractmethod
    def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        limit: int = 100,
        fields: Optional[Sequence[str]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> list[dict]:
        """Return at most `limit` documents matching every filter"""

    @abstractmethod
    def get(self, collection: str, document_id: str) -> dict:
        """Return one document or raise DocumentNotFoundError"""

    @abstractmethod
    def create(self, collection: str, document: dict) -> dict:
        """Insert a document, returning it with its generated id"""

    @abstractmethod
    def update(self, collection: str, document_id: str, patch: dict) -> dict:
        """Apply a partial update and return the updated document"""

    @abstractmethod
    def delete(self, collection: str, document_id: str) -> None:
        """Remove one document"""
