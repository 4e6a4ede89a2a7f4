"""
Learning Service
================
Everything a learner touches after purchase: purchased course list,
saved (wishlisted) courses, and lesson progress.

Progress rows are created lazily on the first completed lesson and only
ever grow; percentages are rounded to two decimals.
"""

from typing import Optional

import structlog

from core.errors import DomainError, ErrorCode
from schemas.domain import Course, SavedCourse, User, UserProgress
from storage.interfaces import IStore

logger = structlog.get_logger(component="learning")


def _progress_view(course: Course, progress: Optional[UserProgress]) -> dict:
    completed = progress.completed_lessons if progress else []
    total = course.total_lessons
    return {
        "completedLessons": completed,
        "totalLessons": total,
        "progressPercentage": progress.percentage(total) if progress else 0.0,
        "isCompleted": progress.is_completed if progress else False,
        "completedAt": progress.completed_at if progress else None,
        "courseTitle": course.title,
    }


class LearningService:

    def __init__(self, store: IStore):
        self.store = store

    async def _course(self, course_id: str) -> Course:
        course = await self.store.courses.get(course_id)
        if course is None:
            raise DomainError(ErrorCode.COURSE_NOT_FOUND, "Course not found")
        return course

    # =========================================================================
    # PURCHASED COURSES
    # =========================================================================

    def purchased_courses(self, user: User) -> list[dict]:
        return [
            entry.model_dump(mode="json", by_alias=True)
            for entry in user.purchased_courses
        ]

    # =========================================================================
    # SAVED COURSES
    # =========================================================================

    async def toggle_saved(self, user_id: str, course_id: str) -> bool:
        """Save the course, or unsave it if already saved. Returns the new state."""
        await self._course(course_id)

        async with self.store.atomic() as tx:
            saved = await tx.saved_courses.get(user_id, course_id) is None
            if saved:
                await tx.saved_courses.add(SavedCourse(user_id=user_id, course_id=course_id))
            else:
                await tx.saved_courses.remove(user_id, course_id)

        logger.info("course_saved" if saved else "course_unsaved", user_id=user_id, course_id=course_id)
        return saved

    async def list_saved(self, user_id: str) -> list[dict]:
        saved = await self.store.saved_courses.list_for_user(user_id)
        courses = await self.store.courses.get_many([s.course_id for s in saved])
        return [
            {
                "id": course.id,
                "title": course.title,
                "imageUrl": course.image_url,
                "newPrice": course.new_price,
                "duration": course.duration,
            }
            for course in (courses.get(s.course_id) for s in saved)
            if course is not None
        ]

    async def remove_saved(self, user_id: str, course_id: str) -> None:
        if not await self.store.saved_courses.remove(user_id, course_id):
            raise DomainError(ErrorCode.SAVED_COURSE_NOT_FOUND, "Course not found in saved courses")
        logger.info("course_unsaved", user_id=user_id, course_id=course_id)

    # =========================================================================
    # PROGRESS
    # =========================================================================

    async def course_progress(self, user_id: str, course_id: str) -> dict:
        course = await self._course(course_id)
        progress = await self.store.progress.get(user_id, course_id)
        return _progress_view(course, progress)

    async def record_lesson(self, user_id: str, course_id: str, lesson_id: str) -> dict:
        course = await self._course(course_id)
        if not course.has_lesson(lesson_id):
            raise DomainError(ErrorCode.LESSON_NOT_FOUND, "Lesson not found in this course")

        async with self.store.atomic() as tx:
            progress = await tx.progress.get(user_id, course_id)
            if progress is None:
                progress = UserProgress(user_id=user_id, course_id=course_id)
            progress = await tx.progress.save(progress.with_lesson(lesson_id))

        logger.info("lesson_completed",
                    user_id=user_id,
                    course_id=course_id,
                    lesson_id=lesson_id,
                    completed=len(progress.completed_lessons))
        return _progress_view(course, progress)

    async def mark_completed(self, user_id: str, course_id: str) -> dict:
        course = await self._course(course_id)

        async with self.store.atomic() as tx:
            progress = await tx.progress.get(user_id, course_id)
            if progress is None:
                progress = UserProgress(user_id=user_id, course_id=course_id)
            progress = await tx.progress.save(progress.mark_completed())

        logger.info("course_completed", user_id=user_id, course_id=course_id)
        return {
            "courseId": course_id,
            "isCompleted": progress.is_completed,
            "completedAt": progress.completed_at,
            "completedLessons": progress.completed_lessons,
            "courseTitle": course.title,
        }

    async def completed_courses(self, user_id: str) -> list[dict]:
        records = await self.store.progress.list_for_user(user_id, completed=True)
        courses = await self.store.courses.get_many([p.course_id for p in records])
        return [
            {
                "courseId": p.course_id,
                "title": courses[p.course_id].title if p.course_id in courses else "Untitled Course",
                "completedAt": p.completed_at or p.updated_at,
            }
            for p in records
        ]

    async def in_progress_courses(self, user_id: str) -> list[dict]:
        """Courses with at least one completed lesson."""
        records = [
            p for p in await self.store.progress.list_for_user(user_id)
            if p.completed_lessons
        ]
        courses = await self.store.courses.get_many([p.course_id for p in records])

        result = []
        for progress in records:
            course = courses.get(progress.course_id)
            if course is None:
                logger.warning("progress_course_missing", course_id=progress.course_id)
                continue
            result.append({
                "courseId": course.id,
                "courseTitle": course.title,
                "imageUrl": course.image_url,
                "progressPercentage": progress.percentage(course.total_lessons),
                "completedLessons": progress.completed_lessons,
                "isCompleted": progress.is_completed,
                "duration": course.duration,
                "newPrice": course.new_price,
            })
        return result
