import asyncio

import pytest

from core.errors import DomainError, ErrorCode
from services.learning import LearningService
from storage.memory import InMemorySavedCourseRepository


@pytest.fixture
def learning(store):
    return LearningService(store)


# =============================================================================
# SAVED COURSES
# =============================================================================

async def test_toggle_saves_then_unsaves(learning, store, user, course):
    assert await learning.toggle_saved(user.id, course.id) is True
    assert await store.saved_courses.get(user.id, course.id) is not None

    assert await learning.toggle_saved(user.id, course.id) is False
    assert await store.saved_courses.get(user.id, course.id) is None


async def test_concurrent_toggles_alternate(learning, store, user, course, monkeypatch):
    original = InMemorySavedCourseRepository.get

    # Yield between the read and the write of each toggle
    async def get_then_yield(self, user_id, course_id):
        found = await original(self, user_id, course_id)
        await asyncio.sleep(0)
        return found

    monkeypatch.setattr(InMemorySavedCourseRepository, "get", get_then_yield)

    results = await asyncio.gather(
        learning.toggle_saved(user.id, course.id),
        learning.toggle_saved(user.id, course.id),
    )

    assert sorted(results) == [False, True]
    assert await store.saved_courses.get(user.id, course.id) is None


async def test_toggle_unknown_course(learning, user):
    with pytest.raises(DomainError) as exc:
        await learning.toggle_saved(user.id, "missing")
    assert exc.value.code == ErrorCode.COURSE_NOT_FOUND
