import functools
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .base import (
    COURSES,
    INSTRUCTORS,
    REVIEW_VOTES,
    REVIEWS,
    TEACHING_RECORDS,
    TERMS,
    DocumentNotFoundError,
    DocumentStore,
    Equal,
    Filter,
    In,
    OrderBy,
    StoreError,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class ReviewDB(Base):
    __tablename__ = "reviews"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    is_anon = Column(Boolean, nullable=False, default=False)
    username = Column(String, nullable=False, default="")
    course_code = Column(String, nullable=False, index=True)
    term_code = Column(String, nullable=False, index=True)
    course_workload = Column(Integer, nullable=True)
    course_difficulties = Column(Integer, nullable=True)
    course_usefulness = Column(Integer, nullable=True)
    course_final_grade = Column(String, nullable=False, default="")
    course_comments = Column(Text, nullable=False, default="")
    instructor_details = Column(Text, nullable=False, default="[]")  # JSON list
    submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Review(id='{self.id}', user_id='{self.user_id}', course_code='{self.course_code}', term_code='{self.term_code}')>"


class ReviewVoteDB(Base):
    __tablename__ = "review_votes"

    id = Column(String, primary_key=True)
    review_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    vote_type = Column(String, nullable=False)
    voted_at = Column(DateTime, nullable=False, default=datetime.now)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<ReviewVote(id='{self.id}', review_id='{self.review_id}', vote_type='{self.vote_type}')>"


class TeachingRecordDB(Base):
    __tablename__ = "teaching_records"

    id = Column(String, primary_key=True)
    course_code = Column(String, nullable=False, index=True)
    term_code = Column(String, nullable=False, index=True)
    instructor_name = Column(String, nullable=False, index=True)
    session_type = Column(String, nullable=False, default="")
    teaching_language = Column(String, nullable=True)
    service_learning = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<TeachingRecord(course='{self.course_code}', term='{self.term_code}', instructor='{self.instructor_name}')>"


class CourseDB(Base):
    __tablename__ = "courses"

    id = Column(String, primary_key=True)
    course_code = Column(String, nullable=False, unique=True)
    course_title = Column(String, nullable=False, default="")
    course_title_tc = Column(String, nullable=True)
    course_title_sc = Column(String, nullable=True)
    course_department = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Course(course_code='{self.course_code}', title='{self.course_title}')>"


class InstructorDB(Base):
    __tablename__ = "instructors"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    name_tc = Column(String, nullable=True)
    name_sc = Column(String, nullable=True)
    title = Column(String, nullable=True)
    email = Column(String, nullable=True)
    department = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Instructor(name='{self.name}')>"


class TermDB(Base):
    __tablename__ = "terms"

    id = Column(String, primary_key=True)
    term_code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False, default="")
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Term(term_code='{self.term_code}', name='{self.name}')>"


TABLES: Dict[str, Type] = {
    REVIEWS: ReviewDB,
    REVIEW_VOTES: ReviewVoteDB,
    TEACHING_RECORDS: TeachingRecordDB,
    COURSES: CourseDB,
    INSTRUCTORS: InstructorDB,
    TERMS: TermDB,
}


def get_database_config(database_url: str) -> Dict[str, Any]:
    """Get engine options with environment-specific optimizations"""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}

    is_local = any(host in database_url for host in ("@localhost", "@127.0.0.1", "@[::1]"))
    if is_local:
        # Local database optimizations
        pool = {
            "pool_size": 5,  # Fewer connections needed locally
            "max_overflow": 10,  # Less overflow needed
            "pool_timeout": 10,  # Faster timeout for local connections
            "pool_recycle": 7200,  # Longer recycle time for stable local connections
        }
    else:
        # Remote database optimizations
        pool = {
            "pool_size": 10,  # More connections for remote database
            "max_overflow": 20,  # More overflow for network latency
            "pool_timeout": 30,  # Longer timeout for network delays
            "pool_recycle": 3600,  # Shorter recycle for remote connections
        }
    return {
        **pool,
        "pool_pre_ping": True,  # Validate connections before use
        "connect_args": {
            "application_name": "reviewengine_api",
            "connect_timeout": 10,
        },
    }


def create_db_engine(database_url: str, create_tables: bool = True) -> Engine:
    """Create database engine with connection pooling"""
    logger.info("Creating database engine with connection pooling")

    engine = create_engine(database_url, echo=False, **get_database_config(database_url))

    # Create tables if they don't exist
    if create_tables:
        Base.metadata.create_all(engine)

    return engine


def monitor_db_performance(func):
    """Decorator to monitor store call performance"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            execution_time = time.time() - start_time
            if execution_time > 1.0:  # Log slow queries (>1 second)
                logger.warning(f"Slow query in {func.__name__}: {execution_time:.2f}s")
            else:
                logger.debug(f"Query {func.__name__}: {execution_time:.3f}s")
            return result
        except Exception as e:
            execution_time = time.time() - start_time
            logger.error(f"Query error in {func.__name__} after {execution_time:.3f}s: {str(e)}")
            raise

    return wrapper


def check_database_health(engine: Engine) -> Dict[str, Any]:
    """Check database connection health and pool status"""
    try:
        # Test connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()

        pool = engine.pool
        try:
            pool_status = {
                "pool_size": pool.size(),
                "checked_in": pool.checkedin(),
                "checked_out": pool.checkedout(),
                "overflow": pool.overflow(),
                "pool_type": str(type(pool).__name__),
            }
        except AttributeError:
            # Fallback for pools without size accounting (e.g. SQLite)
            pool_status = {"pool_type": str(type(pool).__name__), "status": "active"}

        logger.info(f"Database health check passed. Pool status: {pool_status}")
        return {"status": "healthy", "pool_status": pool_status}

    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        return {"status": "unhealthy", "error": str(e)}


def _row_to_document(row: Any, columns: Sequence[str]) -> Dict[str, Any]:
    return {name: getattr(row, name) for name in columns}


class SqlDocumentStore(DocumentStore):
    """DocumentStore over the SQLAlchemy tables above"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,  # Keep objects accessible after commit
        )

    def _table(self, collection: str) -> Type:
        try:
            return TABLES[collection]
        except KeyError:
            raise StoreError(f"Unknown collection: {collection}") from None

    def _column(self, table: Type, field: str):
        column = getattr(table, field, None)
        if column is None:
            raise StoreError(f"Unknown field '{field}' on {table.__tablename__}")
        return column

    def _columns(self, table: Type) -> List[str]:
        return [c.name for c in table.__table__.columns]

    @monitor_db_performance
    def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        limit: int = 100,
        fields: Optional[Sequence[str]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[Dict[str, Any]]:
        table = self._table(collection)
        names = list(fields) if fields else self._columns(table)
        query = select(*[self._column(table, name) for name in names])

        for f in filters:
            column = self._column(table, f.field)
            if isinstance(f, Equal):
                query = query.where(column == f.value)
            elif isinstance(f, In):
                query = query.where(column.in_(list(f.values)))
            else:
                raise StoreError(f"Unsupported filter: {f!r}")

        if order_by is not None:
            column = self._column(table, order_by.field)
            query = query.order_by(column.desc() if order_by.descending else column.asc())

        query = query.limit(limit)

        try:
            with self._session_factory() as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list {collection}: {e}") from e

        return [_row_to_document(row, names) for row in rows]

    def get(self, collection: str, document_id: str) -> Dict[str, Any]:
        table = self._table(collection)
        try:
            with self._session_factory() as session:
                obj = session.get(table, document_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {collection}/{document_id}: {e}") from e
        if obj is None:
            raise DocumentNotFoundError(f"{collection}/{document_id} not found")
        return _row_to_document(obj, self._columns(table))

    @monitor_db_performance
    def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(collection)
        values = {k: v for k, v in document.items() if k in self._columns(table)}
        values.setdefault("id", str(uuid.uuid4()))
        obj = table(**values)
        try:
            with self._session_factory() as session:
                session.add(obj)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create {collection} document: {e}") from e
        return _row_to_document(obj, self._columns(table))

    @monitor_db_performance
    def update(self, collection: str, document_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(collection)
        values = {k: v for k, v in patch.items() if k in self._columns(table) and k != "id"}
        if not values:
            return self.get(collection, document_id)
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(table).where(table.id == document_id).values(**values)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update {collection}/{document_id}: {e}") from e
        if result.rowcount == 0:
            raise DocumentNotFoundError(f"{collection}/{document_id} not found")
        return self.get(collection, document_id)

    @monitor_db_performance
    def delete(self, collection: str, document_id: str) -> None:
        table = self._table(collection)
        try:
            with self._session_factory() as session:
                result = session.execute(delete(table).where(table.id == document_id))
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete {collection}/{document_id}: {e}") from e
        if result.rowcount == 0:
            raise DocumentNotFoundError(f"{collection}/{document_id} not found")
