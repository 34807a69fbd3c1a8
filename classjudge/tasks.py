"""Student work on a task: draft, submit, discard.

Each (task, student) pair owns one ``TaskSubmission`` row. Writes go through
the ORM so the row's version column is checked; a row that changed since it
was read raises ``ConcurrentUpdate`` instead of being overwritten.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from classjudge.errors import (
    AlreadySubmitted,
    ConcurrentUpdate,
    DeadlinePassed,
    DraftNotFound,
    TaskNotFound,
)
from classjudge.models import Task, TaskSubmission, TaskSubmissionStatus, utcnow

logger = logging.getLogger(__name__)

DRAFT = TaskSubmissionStatus.DRAFT.value
SUBMITTED = TaskSubmissionStatus.SUBMITTED.value


async def create_task(session: AsyncSession, teacher_id: str, title: str, description: str = "",
                      deadline: Optional[datetime] = None, classroom_id: Optional[str] = None) -> Task:
    task = Task(
        title=title.strip(),
        description=description or "",
        teacher_id=teacher_id,
        deadline=deadline,
        classroom_id=classroom_id,
    )
    session.add(task)
    await session.commit()
    await session.refresh(task)
    return task


async def get_task(session: AsyncSession, task_id: int) -> Task:
    task = await session.get(Task, task_id)
    if task is None:
        raise TaskNotFound(f"Task not found: {task_id}")
    return task


async def get_submission(session: AsyncSession, task_id: int, student_id: str) -> Optional[TaskSubmission]:
    result = await session.execute(
        select(TaskSubmission).where(
            TaskSubmission.task_id == task_id,
            TaskSubmission.student_id == student_id,
        )
    )
    return result.scalar_one_or_none()


def _check_deadline(task: Task):
    if task.deadline and utcnow() > task.deadline:
        raise DeadlinePassed("Task deadline has passed")


async def _commit(session: AsyncSession, task_id: int, student_id: str):
    try:
        await session.commit()
    except (IntegrityError, StaleDataError):
        await session.rollback()
        logger.info(f"[Task {task_id}] Concurrent update for {student_id}")
        raise ConcurrentUpdate("Submission was modified concurrently, reload and retry")


async def save_draft(session: AsyncSession, task: Task, student_id: str, content: str,
                     expected_version: Optional[int] = None) -> TaskSubmission:
    _check_deadline(task)
    row = await get_submission(session, task.id, student_id)
    now = utcnow()

    if row is None:
        if expected_version is not None:
            raise ConcurrentUpdate("Submission does not exist yet")
        row = TaskSubmission(
            task_id=task.id,
            student_id=student_id,
            content=content,
            status=DRAFT,
            drafted_at=now,
            updated_at=now,
        )
        session.add(row)
    else:
        if row.status == SUBMITTED:
            raise AlreadySubmitted("Task already submitted")
        if expected_version is not None and expected_version != row.version:
            raise ConcurrentUpdate("Submission was modified concurrently, reload and retry")
        row.content = content
        row.drafted_at = now
        row.updated_at = now

    await _commit(session, task.id, student_id)
    return row


async def submit_task_work(session: AsyncSession, task: Task, student_id: str,
                      content: Optional[str] = None) -> TaskSubmission:
    """Explicit student submit; creates the row if the student never saved a draft."""
    _check_deadline(task)
    row = await get_submission(session, task.id, student_id)
    now = utcnow()

    if row is None:
        row = TaskSubmission(
            task_id=task.id,
            student_id=student_id,
            content=content or "",
            status=SUBMITTED,
            submitted_at=now,
            updated_at=now,
        )
        session.add(row)
    else:
        if row.status == SUBMITTED:
            raise AlreadySubmitted("Task already submitted")
        if content is not None:
            row.content = content
        row.status = SUBMITTED
        row.is_auto_submitted = False
        row.submitted_at = now
        row.updated_at = now

    await _commit(session, task.id, student_id)
    logger.info(f"[Task {task.id}] {student_id} submitted")
    return row


async def discard_draft(session: AsyncSession, task: Task, student_id: str):
    row = await get_submission(session, task.id, student_id)
    if row is None:
        raise DraftNotFound("No draft found")
    if row.status != DRAFT:
        raise AlreadySubmitted("Cannot discard a submitted task")
    await session.delete(row)
    await _commit(session, task.id, student_id)


async def list_task_submissions(session: AsyncSession, task_id: int) -> List[TaskSubmission]:
    result = await session.execute(
        select(TaskSubmission).where(TaskSubmission.task_id == task_id).order_by(TaskSubmission.id)
    )
    return list(result.scalars().all())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "classroom_id": task.classroom_id,
        "teacher_id": task.teacher_id,
        "deadline": _iso(task.deadline),
        "is_active": task.is_active,
        "status": task.status,
    }


def task_submission_to_dict(row: TaskSubmission) -> dict:
    return {
        "id": row.id,
        "task_id": row.task_id,
        "student_id": row.student_id,
        "content": row.content,
        "status": row.status,
        "is_auto_submitted": row.is_auto_submitted,
        "drafted_at": _iso(row.drafted_at),
        "submitted_at": _iso(row.submitted_at),
        "auto_submitted_at": _iso(row.auto_submitted_at),
        "version": row.version,
    }
