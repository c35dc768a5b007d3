import asyncio
from datetime import datetime, timedelta

import pytest
from conftest import CURRENT_TERM, CountingStore, FailingStore, InjectingStore

from reviewengine.core.cache import TTLCache
from reviewengine.core.config import Settings
from reviewengine.services.facade import VIEW_PREFIX, AggregationFacade
from reviewengine.store.base import COURSES, REVIEWS, TEACHING_RECORDS


@pytest.fixture
def catalogue(seed):
    """Three courses, two instructors, reviews across two terms"""
    seed.course("COMP1001", "Programming")
    seed.course("MATH1001", "Calculus")
    seed.course("PHYS1001", "Mechanics")
    seed.instructor("Dr Chan")
    seed.instructor("Dr Lee")

    seed.teaching("COMP1001", "Dr Chan", language="English")
    seed.teaching("COMP1001", "Dr Lee", language="Cantonese", service_learning="optional")
    seed.teaching("MATH1001", "Dr Lee", term_code="2024-25-T1", language="English")

    seed.review("u1", "COMP1001", grade="A", workload=4, instructors=["Dr Chan"])
    seed.review("u2", "COMP1001", grade="B", workload=2, instructors=["Dr Chan", "Dr Lee"])
    seed.review("u3", "COMP1001", grade="W", workload=-1, instructors=["Dr Lee"])
    seed.review("u1", "MATH1001", term_code="2024-25-T1", grade="C", instructors=["Dr Lee"])
    return seed


def by_code(items):
    return {item.course_code: item for item in items}


def test_courses_with_stats(facade, catalogue):
    courses = by_code(asyncio.run(facade.get_courses_with_stats()))
    assert list(courses) == ["COMP1001", "MATH1001", "PHYS1001"]

    comp = courses["COMP1001"]
    assert comp.review_count == 3
    assert comp.student_count == 3
    assert comp.average_workload == pytest.approx(3.0)
    assert comp.average_gpa == pytest.approx(3.5)
    assert comp.average_gpa_count == 2
    assert comp.is_offered_in_current_term is True
    assert comp.teaching_languages == ["English", "Cantonese"]
    assert comp.service_learning_types == ["optional"]
    assert comp.stats_truncated is False
    assert comp.teaching_records_truncated is False

    assert courses["MATH1001"].is_offered_in_current_term is False
    assert courses["MATH1001"].teaching_languages == ["English"]


def test_course_without_reviews(facade, catalogue):
    phys = by_code(asyncio.run(facade.get_courses_with_stats()))["PHYS1001"]
    assert phys.review_count == 0
    assert phys.average_workload is None
    assert phys.average_gpa == 0.0
    assert phys.teaching_languages == []


def test_serialized_view_uses_camel_case(facade, catalogue):
    comp = by_code(asyncio.run(facade.get_courses_with_stats()))["COMP1001"]
    data = comp.model_dump(by_alias=True)
    assert data["reviewCount"] == 3
    assert data["isOfferedInCurrentTerm"] is True


def test_instructors_with_stats(facade, catalogue):
    instructors = {i.name: i for i in asyncio.run(facade.get_instructors_with_stats())}
    chan = instructors["Dr Chan"]
    assert chan.review_count == 2
    assert chan.teaching_score == pytest.approx(4.0)
    assert chan.is_teaching_in_current_term is True
    assert chan.teaching_languages == ["English"]

    lee = instructors["Dr Lee"]
    assert lee.review_count == 3
    assert lee.average_gpa_count == 2
    assert lee.teaching_languages == ["English", "Cantonese"]


def test_offered_and_teaching(facade, catalogue):
    assert asyncio.run(facade.is_course_offered("COMP1001")) is True
    assert asyncio.run(facade.is_course_offered("MATH1001")) is False
    assert asyncio.run(facade.is_course_offered("MATH1001", "2024-25-T1")) is True
    assert asyncio.run(facade.is_instructor_teaching("Dr Lee")) is True
    assert asyncio.run(facade.is_instructor_teaching("Dr Nobody")) is False


def test_results_are_cached_until_invalidated(facade, catalogue, store):
    first = asyncio.run(facade.get_courses_with_stats())
    catalogue.review("u9", "COMP1001", grade="F")
    cached = by_code(asyncio.run(facade.get_courses_with_stats()))
    assert cached["COMP1001"].review_count == by_code(first)["COMP1001"].review_count

    facade.invalidate_review_stats()
    fresh = by_code(asyncio.run(facade.get_courses_with_stats()))
    assert fresh["COMP1001"].review_count == 4


def test_results_expire(facade, catalogue, clock, settings):
    asyncio.run(facade.get_courses_with_stats())
    catalogue.review("u9", "COMP1001", grade="F")
    clock.advance(settings.stats_ttl)
    courses = by_code(asyncio.run(facade.get_courses_with_stats()))
    assert courses["COMP1001"].review_count == 4


def test_review_invalidation_keeps_membership(facade, catalogue, cache):
    asyncio.run(facade.get_courses_with_stats())
    facade.invalidate_review_stats()
    keys = cache.stats()["entries"]
    assert keys > 0
    assert cache.invalidate_prefix("ref:") == keys


def test_top_courses_by_gpa(facade, catalogue):
    catalogue.review("u4", "MATH1001", grade="A+")
    top = asyncio.run(facade.get_top_courses_by_gpa(5, 2))
    assert [c.course_code for c in top] == ["COMP1001", "MATH1001"]

    top_one = asyncio.run(facade.get_top_courses_by_gpa(1, 1))
    assert [c.course_code for c in top_one] == ["COMP1001"]


def test_top_courses_min_sample_size(facade, catalogue):
    top = asyncio.run(facade.get_top_courses_by_gpa(5, 2))
    assert [c.course_code for c in top] == ["COMP1001"]


def test_top_instructors_by_gpa(facade, catalogue):
    top = asyncio.run(facade.get_top_instructors_by_gpa(5, 1))
    assert [i.name for i in top] == ["Dr Chan", "Dr Lee"]


def test_truncated_batch_is_flagged(store, cache, catalogue):
    settings = Settings(database_url="sqlite://", current_term_code=CURRENT_TERM, max_records=2)
    facade = AggregationFacade(store, cache, settings)
    courses = asyncio.run(facade.get_courses_with_stats())
    assert all(c.stats_truncated for c in courses)


def test_enrichment_failure_degrades_to_defaults(store, cache, settings, catalogue):
    facade = AggregationFacade(FailingStore(store, [TEACHING_RECORDS]), cache, settings)
    comp = by_code(asyncio.run(facade.get_courses_with_stats()))["COMP1001"]
    assert comp.review_count == 3
    assert comp.teaching_languages == []
    assert comp.is_offered_in_current_term is False
    # Built around a failed read, so never cached
    assert not any(key.startswith(VIEW_PREFIX) for key in cache._entries)


def test_review_fetch_failure_returns_zero_stats(store, cache, settings, catalogue):
    facade = AggregationFacade(FailingStore(store, [REVIEWS]), cache, settings)
    courses = by_code(asyncio.run(facade.get_courses_with_stats()))
    assert courses["COMP1001"].review_count == 0
    assert courses["COMP1001"].is_offered_in_current_term is True
    assert not any(key.startswith(VIEW_PREFIX) for key in cache._entries)


def test_reference_failure_returns_empty(store, cache, settings, catalogue):
    facade = AggregationFacade(FailingStore(store, [COURSES]), cache, settings)
    assert asyncio.run(facade.get_courses_with_stats()) == []


def test_current_term_from_terms_table(store, seed):
    now = datetime.now()
    seed.term("2024-25-T1", now - timedelta(days=400), now - timedelta(days=300))
    seed.term("2025-26-T9", now - timedelta(days=10), now + timedelta(days=10))
    seed.course("COMP1001")
    seed.teaching("COMP1001", "Dr Chan", term_code="2025-26-T9")
    facade = AggregationFacade(store, TTLCache(), Settings(database_url="sqlite://", current_term_code=None))
    assert asyncio.run(facade.resolve_term()) == "2025-26-T9"
    assert asyncio.run(facade.resolve_term("2024-25-T1")) == "2024-25-T1"
    assert asyncio.run(facade.is_course_offered("COMP1001")) is True


def test_no_current_term(store, seed):
    seed.course("COMP1001")
    facade = AggregationFacade(store, TTLCache(), Settings(database_url="sqlite://", current_term_code=None))
    assert asyncio.run(facade.resolve_term()) is None
    courses = asyncio.run(facade.get_courses_with_stats())
    assert courses[0].is_offered_in_current_term is False


def test_invalidate_cache(facade, catalogue, cache):
    asyncio.run(facade.get_courses_with_stats())
    assert asyncio.run(facade.invalidate_cache()) > 0
    assert cache.stats()["entries"] == 0


def test_capped_teaching_records_are_flagged(store, cache, seed):
    seed.course("COMP1001")
    for i in range(6):
        seed.teaching("COMP1001", f"Dr {i}", term_code=f"2020-2{i}-T1", language=f"L{i}")
    settings = Settings(database_url="sqlite://", current_term_code=CURRENT_TERM, max_records=3)
    comp = asyncio.run(AggregationFacade(store, cache, settings).get_courses_with_stats())[0]
    assert comp.teaching_records_truncated is True
    # The newest terms are the ones kept
    assert comp.teaching_languages == ["L3", "L4", "L5"]


def test_capped_term_membership_is_flagged(store, cache, seed):
    seed.instructor("Dr 0")
    for i in range(4):
        seed.teaching(f"COMP100{i}", f"Dr {i}")
    settings = Settings(database_url="sqlite://", current_term_code=CURRENT_TERM, max_records=3)
    facade = AggregationFacade(store, cache, settings)
    assert facade.term_membership(CURRENT_TERM).truncated is True
    instructors = asyncio.run(facade.get_instructors_with_stats())
    assert instructors[0].teaching_records_truncated is True


def test_term_values_share_one_review_batch(store, settings, catalogue):
    counting = CountingStore(store)
    facade = AggregationFacade(counting, TTLCache(), settings)
    for i in range(20):
        asyncio.run(facade.get_courses_with_stats(f"unknown-{i}"))
    assert counting.list_calls[REVIEWS] == 1


def test_term_values_stay_within_cache_bound(store, settings, catalogue):
    cache = TTLCache(max_entries=10)
    facade = AggregationFacade(store, cache, settings)
    for i in range(20):
        courses = asyncio.run(facade.get_courses_with_stats(f"unknown-{i}"))
        assert len(courses) == 3
    assert cache.stats()["entries"] <= 10
    assert cache.stats()["evictions"] > 0


def test_single_course_stats(facade, catalogue):
    comp = asyncio.run(facade.get_course_stats("COMP1001"))
    assert comp.review_count == 3
    assert comp.is_offered_in_current_term is True
    assert asyncio.run(facade.get_course_stats("NOPE1000")) is None


def test_single_instructor_stats(facade, catalogue):
    lee = asyncio.run(facade.get_instructor_stats("Dr Lee"))
    assert lee.review_count == 3
    assert asyncio.run(facade.get_instructor_stats("Dr Nobody")) is None


def test_course_teaching_info(facade, catalogue):
    catalogue.term(CURRENT_TERM, datetime(2025, 9, 1), datetime(2025, 12, 31), name="2025-26 Term 1")
    info = asyncio.run(facade.get_course_teaching_info("COMP1001"))
    assert {i.instructor.name for i in info} == {"Dr Chan", "Dr Lee"}
    assert all(i.term.name == "2025-26 Term 1" for i in info)
    lee = next(i for i in info if i.instructor.name == "Dr Lee")
    assert lee.teaching_language == "Cantonese"
    assert lee.service_learning.value == "optional"
    assert asyncio.run(facade.get_course_teaching_info("NOPE1000")) == []


def test_instructor_teaching_courses_newest_first(facade, catalogue):
    courses = asyncio.run(facade.get_instructor_teaching_courses("Dr Lee"))
    assert [(c.course.course_code, c.term.term_code) for c in courses] == [
        ("COMP1001", CURRENT_TERM),
        ("MATH1001", "2024-25-T1"),
    ]
    assert courses[0].course.course_title == "Programming"
    # No terms table rows, so only the code is known
    assert courses[0].term.name == ""


def test_teaching_info_store_failure(store, cache, settings, catalogue):
    facade = AggregationFacade(FailingStore(store, [TEACHING_RECORDS]), cache, settings)
    assert asyncio.run(facade.get_course_teaching_info("COMP1001")) == []


def test_malformed_reference_row_is_skipped(store, cache, settings, catalogue):
    broken = InjectingStore(store, COURSES, [{"id": "bad", "course_code": None}])
    courses = asyncio.run(AggregationFacade(broken, cache, settings).get_courses_with_stats())
    assert [c.course_code for c in courses] == ["COMP1001", "MATH1001", "PHYS1001"]
