"""Promotes draft task submissions to submitted once the task deadline passes.

A sweep runs at most once at a time per process. Each draft is promoted with
a conditional UPDATE on (status, version), so a draft a student touched after
the sweep read it is skipped instead of clobbered. Notifications go out after
the task's promotions are committed; a failed notification never undoes them.
"""
import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import func, select, update

from classjudge.config import AUTO_SUBMIT_INTERVAL_SECONDS
from classjudge.errors import DeadlineNotSet, TaskNotFound
from classjudge.models import Task, TaskSubmission, TaskSubmissionStatus, async_session, utcnow
from classjudge.notifications import Notifier

logger = logging.getLogger(__name__)

DRAFT = TaskSubmissionStatus.DRAFT.value
SUBMITTED = TaskSubmissionStatus.SUBMITTED.value


@dataclass
class TaskReport:
    task_id: int
    task_title: str = ""
    auto_submitted_count: int = 0
    students: List[str] = field(default_factory=list)
    skipped: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "auto_submitted_count": self.auto_submitted_count,
            "students": self.students,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class SweepReport:
    skipped: bool = False
    total_tasks: int = 0
    total_auto_submitted: int = 0
    results: List[TaskReport] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "total_tasks": self.total_tasks,
            "total_auto_submitted": self.total_auto_submitted,
            "results": [r.to_dict() for r in self.results],
        }


def _overdue(now):
    return (
        Task.is_active.is_(True),
        Task.status == "active",
        Task.deadline.is_not(None),
        Task.deadline < now,
        Task.submissions.any(TaskSubmission.status == DRAFT),
    )


def _iso(value):
    return value.isoformat() if value else None


class AutoSubmitter:
    def __init__(self, session_factory=async_session, notifier: Optional[Notifier] = None,
                 interval: float = AUTO_SUBMIT_INTERVAL_SECONDS,
                 clock: Callable = utcnow):
        self.session_factory = session_factory
        self.notifier = notifier or Notifier(session_factory)
        self.interval = interval
        self.clock = clock
        self._sweep_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_processing(self) -> bool:
        return self._sweep_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def sweep(self) -> SweepReport:
        if self._sweep_lock.locked():
            logger.info("[AutoSubmit] Sweep already in progress, skipping")
            return SweepReport(skipped=True)

        async with self._sweep_lock:
            now = self.clock()
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Task.id).where(*_overdue(now)).order_by(Task.deadline, Task.id)
                )
                task_ids = list(result.scalars().all())

            logger.info(f"[AutoSubmit] Found {len(task_ids)} tasks with passed deadlines")
            report = SweepReport(total_tasks=len(task_ids))
            for task_id in task_ids:
                try:
                    task_report = await self._process_task(task_id, now)
                except Exception as e:
                    logger.exception(f"[AutoSubmit] Task {task_id} failed: {e}")
                    task_report = TaskReport(task_id=task_id, error=str(e))
                report.results.append(task_report)
                report.total_auto_submitted += task_report.auto_submitted_count

            logger.info(
                f"[AutoSubmit] Sweep done: {report.total_auto_submitted} submissions "
                f"across {report.total_tasks} tasks"
            )
            return report

    async def submit_task(self, task_id: int) -> TaskReport:
        """Promote one task's drafts now. The deadline must be set but need not have passed."""
        async with self.session_factory() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise TaskNotFound(f"Task not found: {task_id}")
            if task.deadline is None:
                raise DeadlineNotSet("Task has no deadline set")
        return await self._process_task(task_id, self.clock())

    async def _process_task(self, task_id: int, now) -> TaskReport:
        async with self.session_factory() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise TaskNotFound(f"Task not found: {task_id}")
            report = TaskReport(task_id=task.id, task_title=task.title)
            teacher_id = task.teacher_id

            result = await session.execute(
                select(TaskSubmission.id, TaskSubmission.student_id, TaskSubmission.version)
                .where(TaskSubmission.task_id == task_id, TaskSubmission.status == DRAFT)
                .order_by(TaskSubmission.id)
            )
            for row_id, student_id, version in result.all():
                promoted = await session.execute(
                    update(TaskSubmission)
                    .where(
                        TaskSubmission.id == row_id,
                        TaskSubmission.status == DRAFT,
                        TaskSubmission.version == version,
                    )
                    .values(
                        status=SUBMITTED,
                        is_auto_submitted=True,
                        submitted_at=now,
                        auto_submitted_at=now,
                        updated_at=now,
                        version=version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if promoted.rowcount == 1:
                    report.students.append(student_id)
                else:
                    report.skipped += 1
                    logger.warning(f"[AutoSubmit] Task {task_id}: draft of {student_id} changed, skipped")

            if report.students:
                await session.commit()

        report.auto_submitted_count = len(report.students)
        if report.students:
            logger.info(f"[AutoSubmit] Task {task_id}: auto-submitted {report.auto_submitted_count} drafts")
            await self._notify(task_id, report.task_title, teacher_id, report.students)
        return report

    async def _notify(self, task_id: int, title: str, teacher_id: str, students: List[str]):
        data = {"task_id": task_id, "task_title": title, "count": len(students)}
        try:
            await self.notifier.notify(
                teacher_id,
                title="Auto-Submission Completed",
                message=f'{len(students)} student(s) had their draft submissions '
                        f'automatically submitted for "{title}"',
                kind="auto_submission",
                data=data,
            )
        except Exception as e:
            logger.error(f"[AutoSubmit] Task {task_id}: teacher notification failed: {e}")

        for student_id in students:
            try:
                await self.notifier.notify(
                    student_id,
                    title="Task Auto-Submitted",
                    message=f'Your draft submission for "{title}" has been automatically '
                            f'submitted due to the deadline.',
                    kind="auto_submission",
                    data={"task_id": task_id, "task_title": title},
                )
            except Exception as e:
                logger.error(f"[AutoSubmit] Task {task_id}: notification to {student_id} failed: {e}")

    async def pending(self) -> dict:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Task).where(*_overdue(now)).order_by(Task.deadline, Task.id)
            )
            tasks = list(result.scalars().all())

            entries = []
            for task in tasks:
                drafts = await session.execute(
                    select(TaskSubmission)
                    .where(TaskSubmission.task_id == task.id, TaskSubmission.status == DRAFT)
                    .order_by(TaskSubmission.id)
                )
                drafts = drafts.scalars().all()
                entries.append({
                    "task_id": task.id,
                    "title": task.title,
                    "deadline": _iso(task.deadline),
                    "classroom_id": task.classroom_id,
                    "teacher_id": task.teacher_id,
                    "draft_count": len(drafts),
                    "drafts": [
                        {"student_id": d.student_id, "drafted_at": _iso(d.drafted_at), "version": d.version}
                        for d in drafts
                    ],
                })

        return {
            "total_tasks": len(entries),
            "total_drafts": sum(e["draft_count"] for e in entries),
            "tasks": entries,
        }

    async def history(self, task_id: int) -> dict:
        async with self.session_factory() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise TaskNotFound(f"Task not found: {task_id}")
            result = await session.execute(
                select(TaskSubmission)
                .where(TaskSubmission.task_id == task_id, TaskSubmission.status == SUBMITTED)
                .order_by(TaskSubmission.submitted_at, TaskSubmission.id)
            )
            rows = result.scalars().all()

        def entry(row):
            return {
                "student_id": row.student_id,
                "submitted_at": _iso(row.submitted_at),
                "auto_submitted_at": _iso(row.auto_submitted_at),
            }

        auto = [entry(r) for r in rows if r.is_auto_submitted]
        manual = [entry(r) for r in rows if not r.is_auto_submitted]
        return {
            "task_id": task.id,
            "title": task.title,
            "deadline": _iso(task.deadline),
            "teacher_id": task.teacher_id,
            "auto_submitted": auto,
            "manually_submitted": manual,
            "total_auto_submitted": len(auto),
            "total_manually_submitted": len(manual),
        }

    async def stats(self) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Task.id, Task.title, Task.deadline, func.count(TaskSubmission.id))
                .join(TaskSubmission, TaskSubmission.task_id == Task.id)
                .where(TaskSubmission.is_auto_submitted.is_(True))
                .group_by(Task.id, Task.title, Task.deadline)
                .order_by(Task.deadline.desc(), Task.id)
            )
            tasks = [
                {"task_id": task_id, "title": title, "deadline": _iso(deadline), "auto_submitted_count": count}
                for task_id, title, deadline, count in result.all()
            ]
        return {
            "is_running": self.is_running,
            "is_processing": self.is_processing,
            "interval_seconds": self.interval,
            "tasks_with_auto_submissions": len(tasks),
            "total_auto_submitted": sum(t["auto_submitted_count"] for t in tasks),
            "tasks": tasks,
        }

    def start(self):
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._run_forever())
        logger.info(f"[AutoSubmit] Scheduler started, every {self.interval}s")

    async def stop(self):
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._loop_task
        self._loop_task = None
        logger.info("[AutoSubmit] Scheduler stopped")

    async def _run_forever(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.exception(f"[AutoSubmit] Sweep failed: {e}")
