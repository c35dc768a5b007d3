"""
FastAPI application for the review engine
Exposes aggregated course / instructor statistics, the review eligibility
check and the review lifecycle operations
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.cache import StatsMirror, TTLCache
from ..core.config import Settings, get_settings
from ..models.schema import (
    CourseStats,
    CourseTeachingInfo,
    EligibilityResult,
    InstructorStats,
    InstructorTeachingCourse,
    Review,
    ReviewVote,
    ReviewWithVotes,
    VoteType,
)
from ..services.eligibility import EligibilityEngine, ReviewPolicy
from ..services.facade import AggregationFacade
from ..services.reviews import InvalidReviewError, ReviewNotAllowedError, ReviewService
from ..store.base import DocumentNotFoundError, DocumentStore, StoreError
from ..store.sql import SqlDocumentStore, check_database_health, create_db_engine

logger = logging.getLogger(__name__)


class HealthCheck(BaseModel):
    """Health check response model"""

    status: str
    database: Dict[str, Any]
    cache: Dict[str, Any]
    api_version: str


class OfferedResponse(BaseModel):
    code: str
    term_code: Optional[str]
    offered: bool


class VoteRequest(BaseModel):
    user_id: str
    vote_type: VoteType


class RenameRequest(BaseModel):
    username: str


def create_app(settings: Optional[Settings] = None, store: Optional[DocumentStore] = None) -> FastAPI:
    """
    Build the application.

    The store, cache and services are created once per application and
    shared by every request; tests pass their own store.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_store = store
        if app_store is None:
            app_store = SqlDocumentStore(create_db_engine(settings.database_url))
        cache = TTLCache(max_entries=settings.cache_max_entries, sweep_interval=settings.cache_sweep_interval)
        mirror = StatsMirror(settings.redis_url, prefix=settings.redis_key_prefix)
        facade = AggregationFacade(app_store, cache, settings, mirror=mirror)
        eligibility = EligibilityEngine(app_store, ReviewPolicy.from_settings(settings))

        app.state.settings = settings
        app.state.store = app_store
        app.state.cache = cache
        app.state.facade = facade
        app.state.eligibility = eligibility
        app.state.reviews = ReviewService(app_store, eligibility, facade)
        logger.info(f"{settings.app_name} {settings.version} started")
        yield
        await mirror.close()

    app = FastAPI(
        title="ReviewEngine API",
        description="Course and instructor review statistics, eligibility checks and review management.",
        version=settings.version,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DocumentNotFoundError)
    async def not_found_handler(request: Request, exc: DocumentNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store failure on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Review store unavailable"})

    register_routes(app)
    return app


def get_facade(request: Request) -> AggregationFacade:
    return request.app.state.facade


def get_eligibility(request: Request) -> EligibilityEngine:
    return request.app.state.eligibility


def get_review_service(request: Request) -> ReviewService:
    return request.app.state.reviews


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def register_routes(app: FastAPI) -> None:
    @app.get("/", summary="/", tags=["General"])
    async def root():
        """API welcome message"""
        return {"message": "Welcome to ReviewEngine API"}

    @app.get(
        "/health",
        response_model=HealthCheck,
        summary="/health",
        description="Returns system health status including database connectivity and cache metrics.",
        tags=["System Health"],
    )
    def health_check(request: Request):
        store = request.app.state.store
        if isinstance(store, SqlDocumentStore):
            db_health = check_database_health(store.engine)
        else:
            db_health = {"status": "unknown", "store": type(store).__name__}
        status = "healthy" if db_health["status"] != "unhealthy" else "unhealthy"
        return {
            "status": status,
            "database": db_health,
            "cache": request.app.state.cache.stats(),
            "api_version": request.app.state.settings.version,
        }

    @app.get(
        "/courses/stats",
        response_model=List[CourseStats],
        summary="/courses/stats",
        description="All courses with review statistics, current-term availability and teaching badges.",
        tags=["Courses"],
    )
    async def courses_with_stats(
        term: Optional[str] = Query(None, description="Term code used for current-term flags"),
        facade: AggregationFacade = Depends(get_facade),
    ):
        return await facade.get_courses_with_stats(term)

    @app.get(
        "/courses/top-gpa",
        response_model=List[CourseStats],
        summary="/courses/top-gpa",
        description="Courses ranked by average GPA, ignoring courses with too few graded reviews.",
        tags=["Courses"],
    )
    async def top_courses_by_gpa(
        n: Optional[int] = Query(None, ge=1, le=100),
        min_samples: Optional[int] = Query(None, ge=0),
        facade: AggregationFacade = Depends(get_facade),
        settings: Settings = Depends(get_app_settings),
    ):
        return await facade.get_top_courses_by_gpa(
            n or settings.default_top_n,
            settings.default_min_sample_size if min_samples is None else min_samples,
        )

    @app.get(
        "/courses/{course_code}/offered",
        response_model=OfferedResponse,
        summary="/courses/{course_code}/offered",
        tags=["Courses"],
    )
    async def course_offered(
        course_code: str,
        term: Optional[str] = Query(None),
        facade: AggregationFacade = Depends(get_facade),
    ):
        term_code = await facade.resolve_term(term)
        offered = await facade.is_course_offered(course_code, term_code)
        return {"code": course_code, "term_code": term_code, "offered": offered}

    @app.get(
        "/courses/{course_code}/stats",
        response_model=CourseStats,
        summary="/courses/{course_code}/stats",
        tags=["Courses"],
    )
    async def course_stats(
        course_code: str,
        term: Optional[str] = Query(None),
        facade: AggregationFacade = Depends(get_facade),
    ):
        course = await facade.get_course_stats(course_code, term)
        if course is None:
            raise HTTPException(status_code=404, detail=f"Course {course_code} not found")
        return course

    @app.get(
        "/courses/{course_code}/teaching",
        response_model=List[CourseTeachingInfo],
        summary="/courses/{course_code}/teaching",
        description="Teaching records of the course joined with term and instructor, newest term first.",
        tags=["Courses"],
    )
    async def course_teaching(course_code: str, facade: AggregationFacade = Depends(get_facade)):
        return await facade.get_course_teaching_info(course_code)

    @app.get("/courses/{course_code}/reviews", response_model=List[ReviewWithVotes], tags=["Courses"])
    def course_reviews(
        course_code: str,
        user_id: Optional[str] = Query(None, description="Marks this user's own votes"),
        service: ReviewService = Depends(get_review_service),
    ):
        return service.course_reviews_with_votes(course_code, user_id)

    @app.get(
        "/instructors/stats",
        response_model=List[InstructorStats],
        summary="/instructors/stats",
        description="All instructors with review statistics, current-term activity and teaching languages.",
        tags=["Instructors"],
    )
    async def instructors_with_stats(
        term: Optional[str] = Query(None),
        facade: AggregationFacade = Depends(get_facade),
    ):
        return await facade.get_instructors_with_stats(term)

    @app.get(
        "/instructors/top-gpa",
        response_model=List[InstructorStats],
        summary="/instructors/top-gpa",
        tags=["Instructors"],
    )
    async def top_instructors_by_gpa(
        n: Optional[int] = Query(None, ge=1, le=100),
        min_samples: Optional[int] = Query(None, ge=0),
        facade: AggregationFacade = Depends(get_facade),
        settings: Settings = Depends(get_app_settings),
    ):
        return await facade.get_top_instructors_by_gpa(
            n or settings.default_top_n,
            settings.default_min_sample_size if min_samples is None else min_samples,
        )

    @app.get(
        "/instructors/{name}/teaching",
        response_model=OfferedResponse,
        summary="/instructors/{name}/teaching",
        tags=["Instructors"],
    )
    async def instructor_teaching(
        name: str,
        term: Optional[str] = Query(None),
        facade: AggregationFacade = Depends(get_facade),
    ):
        term_code = await facade.resolve_term(term)
        teaching = await facade.is_instructor_teaching(name, term_code)
        return {"code": name, "term_code": term_code, "offered": teaching}

    @app.get(
        "/instructors/{name}/stats",
        response_model=InstructorStats,
        summary="/instructors/{name}/stats",
        tags=["Instructors"],
    )
    async def instructor_stats(
        name: str,
        term: Optional[str] = Query(None),
        facade: AggregationFacade = Depends(get_facade),
    ):
        instructor = await facade.get_instructor_stats(name, term)
        if instructor is None:
            raise HTTPException(status_code=404, detail=f"Instructor {name} not found")
        return instructor

    @app.get(
        "/instructors/{name}/courses",
        response_model=List[InstructorTeachingCourse],
        summary="/instructors/{name}/courses",
        description="Courses the instructor taught, newest term first.",
        tags=["Instructors"],
    )
    async def instructor_courses(name: str, facade: AggregationFacade = Depends(get_facade)):
        return await facade.get_instructor_teaching_courses(name)

    @app.get("/instructors/{name}/reviews", response_model=List[ReviewWithVotes], tags=["Instructors"])
    def instructor_reviews(
        name: str,
        user_id: Optional[str] = Query(None, description="Marks this user's own votes"),
        service: ReviewService = Depends(get_review_service),
    ):
        return service.instructor_reviews_with_votes(name, user_id)

    @app.get(
        "/eligibility",
        response_model=EligibilityResult,
        summary="/eligibility",
        description="Whether a user may submit a review for a course in a term. Always reads live data.",
        tags=["Reviews"],
    )
    def check_eligibility(
        user_id: str = Query(...),
        course_code: str = Query(...),
        term_code: str = Query(...),
        engine: EligibilityEngine = Depends(get_eligibility),
    ):
        return engine.check(user_id, course_code, term_code)

    @app.post("/reviews", response_model=Review, status_code=201, tags=["Reviews"])
    def submit_review(review: Review, service: ReviewService = Depends(get_review_service)):
        try:
            return service.submit_review(review)
        except ReviewNotAllowedError as e:
            raise HTTPException(status_code=409, detail=e.reason.value if e.reason else str(e))
        except InvalidReviewError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.patch("/reviews/{review_id}", response_model=Review, tags=["Reviews"])
    def update_review(review_id: str, patch: Dict[str, Any], service: ReviewService = Depends(get_review_service)):
        try:
            return service.update_review(review_id, patch)
        except ReviewNotAllowedError as e:
            raise HTTPException(status_code=409, detail=e.reason.value if e.reason else str(e))
        except InvalidReviewError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.delete("/reviews/{review_id}", tags=["Reviews"])
    def delete_review(review_id: str, service: ReviewService = Depends(get_review_service)):
        removed_votes = service.delete_review(review_id)
        return {"detail": "Review deleted", "removed_votes": removed_votes}

    @app.post("/reviews/{review_id}/vote", response_model=ReviewVote, tags=["Reviews"])
    def vote_on_review(review_id: str, body: VoteRequest, service: ReviewService = Depends(get_review_service)):
        return service.vote(review_id, body.user_id, body.vote_type)

    @app.delete("/reviews/{review_id}/vote", tags=["Reviews"])
    def remove_vote(
        review_id: str,
        user_id: str = Query(...),
        service: ReviewService = Depends(get_review_service),
    ):
        return {"removed": service.remove_vote(review_id, user_id)}

    @app.get("/reviews/{review_id}/votes", tags=["Reviews"])
    def review_votes(review_id: str, service: ReviewService = Depends(get_review_service)):
        return service.vote_counts(review_id)

    @app.post("/users/{user_id}/rename", tags=["Reviews"])
    def rename_user(user_id: str, body: RenameRequest, service: ReviewService = Depends(get_review_service)):
        return {"updated": service.backfill_author_name(user_id, body.username)}

    @app.get("/users/{user_id}/reviews", response_model=List[ReviewWithVotes], tags=["Reviews"])
    def user_reviews(user_id: str, service: ReviewService = Depends(get_review_service)):
        return service.user_reviews(user_id)

    @app.post("/cache/invalidate", summary="/cache/invalidate", tags=["System Health"])
    async def invalidate_cache(facade: AggregationFacade = Depends(get_facade)):
        """Administrative reset of every cached statistic"""
        return {"invalidated": await facade.invalidate_cache()}

    @app.get("/cache/stats", summary="/cache/stats", tags=["System Health"])
    def cache_stats(request: Request):
        return request.app.state.cache.stats()


app = create_app()
