# services/catalog.py
# Course and subscription-plan catalog (admin writes, public reads).

import structlog
from pydantic import ValidationError

from core.errors import DomainError, ErrorCode
from schemas.api import CourseCreateRequest, SubscriptionCreateRequest
from schemas.domain import Course, Subscription
from storage.interfaces import IStore

logger = structlog.get_logger(component="catalog")


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    return first.get("msg", "Invalid data").removeprefix("Value error, ")


class CatalogService:

    def __init__(self, store: IStore):
        self.store = store

    async def create_course(self, request: CourseCreateRequest) -> Course:
        try:
            course = Course(**request.model_dump())
        except ValidationError as e:
            raise DomainError(ErrorCode.VALIDATION_ERROR, _validation_message(e)) from e

        await self.store.courses.create(course)
        logger.info("course_created", course_id=course.id, title=course.title)
        return course

    async def get_course(self, course_id: str) -> Course:
        course = await self.store.courses.get(course_id)
        if course is None:
            raise DomainError(ErrorCode.COURSE_NOT_FOUND, "Course not found")
        return course

    async def list_courses(self) -> list[Course]:
        return await self.store.courses.list_all()

    async def create_subscription(self, request: SubscriptionCreateRequest) -> Subscription:
        try:
            plan = Subscription(**request.model_dump())
        except ValidationError as e:
            raise DomainError(ErrorCode.VALIDATION_ERROR, _validation_message(e)) from e

        await self.store.subscriptions.create(plan)
        logger.info("subscription_plan_created", subscription_id=plan.id, name=plan.name.value)
        return plan

    async def list_subscriptions(self) -> list[Subscription]:
        return await self.store.subscriptions.list_all()
