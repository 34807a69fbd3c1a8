import asyncio
from datetime import timedelta

import pytest

from classjudge import tasks
from classjudge.autosubmit import AutoSubmitter
from classjudge.errors import ConcurrentUpdate, DeadlineNotSet, TaskNotFound
from classjudge.models import utcnow
from tests.fakes import RecordingNotifier


async def task_with_drafts(session, students, title="Essay", teacher_id="teacher-1"):
    """Drafts are saved before the deadline, then the deadline is moved into the past."""
    task = await tasks.create_task(session, teacher_id=teacher_id, title=title,
                                   deadline=utcnow() + timedelta(hours=1))
    for student in students:
        await tasks.save_draft(session, task, student, f"work of {student}")
    task.deadline = utcnow() - timedelta(minutes=1)
    await session.commit()
    return task


async def fetch(db, task_id, student_id):
    async with db() as session:
        return await tasks.get_submission(session, task_id, student_id)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def submitter(db, notifier):
    return AutoSubmitter(session_factory=db, notifier=notifier, interval=0.05)


@pytest.mark.asyncio
async def test_sweep_promotes_overdue_drafts(db, session, submitter):
    task = await task_with_drafts(session, ["s1", "s2"])

    report = await submitter.sweep()

    assert report.skipped is False
    assert report.total_tasks == 1
    assert report.total_auto_submitted == 2
    assert sorted(report.results[0].students) == ["s1", "s2"]

    row = await fetch(db, task.id, "s1")
    assert row.status == "submitted"
    assert row.is_auto_submitted is True
    assert row.auto_submitted_at is not None
    assert row.submitted_at == row.auto_submitted_at
    assert row.content == "work of s1"


@pytest.mark.asyncio
async def test_second_sweep_changes_nothing(db, session, submitter):
    task = await task_with_drafts(session, ["s1"])
    await submitter.sweep()
    before = await fetch(db, task.id, "s1")

    report = await submitter.sweep()

    after = await fetch(db, task.id, "s1")
    assert report.total_tasks == 0
    assert report.total_auto_submitted == 0
    assert after.version == before.version
    assert after.auto_submitted_at == before.auto_submitted_at


@pytest.mark.asyncio
async def test_open_tasks_and_manual_submissions_untouched(db, session, submitter):
    open_task = await tasks.create_task(session, teacher_id="t", title="Open",
                                        deadline=utcnow() + timedelta(days=1))
    await tasks.save_draft(session, open_task, "s1", "in progress")
    closed = await task_with_drafts(session, ["s2"], title="Closed")
    closed.deadline = utcnow() + timedelta(hours=1)
    await session.commit()
    await tasks.submit_task_work(session, closed, "s3", "on time")
    closed.deadline = utcnow() - timedelta(minutes=1)
    await session.commit()

    await submitter.sweep()

    assert (await fetch(db, open_task.id, "s1")).status == "draft"
    manual = await fetch(db, closed.id, "s3")
    assert manual.status == "submitted"
    assert manual.is_auto_submitted is False
    assert (await fetch(db, closed.id, "s2")).is_auto_submitted is True


@pytest.mark.asyncio
async def test_notifies_teacher_and_each_student(session, submitter, notifier):
    await task_with_drafts(session, ["s1", "s2"], teacher_id="teacher-9")

    await submitter.sweep()

    recipients = [n["recipient_id"] for n in notifier.sent]
    assert recipients[0] == "teacher-9"
    assert sorted(recipients[1:]) == ["s1", "s2"]
    assert notifier.sent[0]["data"]["count"] == 2


@pytest.mark.asyncio
async def test_failed_notification_keeps_promotion(db, session):
    submitter = AutoSubmitter(session_factory=db, notifier=RecordingNotifier(fail=True))
    task = await task_with_drafts(session, ["s1"])

    report = await submitter.sweep()

    assert report.total_auto_submitted == 1
    assert (await fetch(db, task.id, "s1")).status == "submitted"


@pytest.mark.asyncio
async def test_failing_task_does_not_stop_sweep(db, session, submitter, monkeypatch):
    broken = await task_with_drafts(session, ["s1"], title="Broken")
    healthy = await task_with_drafts(session, ["s2"], title="Healthy")
    process_task = submitter._process_task

    async def flaky(task_id, now):
        if task_id == broken.id:
            raise RuntimeError("database hiccup")
        return await process_task(task_id, now)

    monkeypatch.setattr(submitter, "_process_task", flaky)

    report = await submitter.sweep()

    assert report.total_tasks == 2
    assert report.total_auto_submitted == 1
    errors = {r.task_id: r.error for r in report.results}
    assert errors == {broken.id: "database hiccup", healthy.id: None}
    assert not submitter.is_processing
    assert (await fetch(db, broken.id, "s1")).status == "draft"
    assert (await fetch(db, healthy.id, "s2")).status == "submitted"

    monkeypatch.setattr(submitter, "_process_task", process_task)
    assert (await submitter.sweep()).total_auto_submitted == 1


@pytest.mark.asyncio
async def test_overlapping_sweep_is_skipped(db, session):
    entered = asyncio.Event()
    release = asyncio.Event()

    class SlowNotifier(RecordingNotifier):
        async def notify(self, *args, **kwargs):
            entered.set()
            await release.wait()

    submitter = AutoSubmitter(session_factory=db, notifier=SlowNotifier())
    await task_with_drafts(session, ["s1"])

    first = asyncio.create_task(submitter.sweep())
    await entered.wait()
    assert submitter.is_processing

    second = await submitter.sweep()
    assert second.skipped is True
    assert second.total_auto_submitted == 0

    release.set()
    report = await first
    assert report.total_auto_submitted == 1
    assert not submitter.is_processing


@pytest.mark.asyncio
async def test_student_edit_after_promotion_is_not_applied(db, session, submitter):
    task = await tasks.create_task(session, teacher_id="t", title="Quiz",
                                   deadline=utcnow() + timedelta(hours=1))
    await tasks.save_draft(session, task, "s1", "v1")

    # promotes through its own session while this one still holds the draft
    await submitter.submit_task(task.id)

    with pytest.raises(ConcurrentUpdate):
        await tasks.save_draft(session, task, "s1", "v2")
    row = await fetch(db, task.id, "s1")
    assert (row.status, row.content) == ("submitted", "v1")


@pytest.mark.asyncio
async def test_submit_task_checks(session, submitter):
    no_deadline = await tasks.create_task(session, teacher_id="t", title="Open ended")

    with pytest.raises(DeadlineNotSet):
        await submitter.submit_task(no_deadline.id)
    with pytest.raises(TaskNotFound):
        await submitter.submit_task(12345)


@pytest.mark.asyncio
async def test_pending_history_and_stats(session, submitter):
    task = await task_with_drafts(session, ["s1", "s2"])

    pending = await submitter.pending()
    assert pending["total_tasks"] == 1
    assert pending["total_drafts"] == 2
    assert pending["tasks"][0]["task_id"] == task.id

    await submitter.sweep()

    assert (await submitter.pending())["total_tasks"] == 0
    history = await submitter.history(task.id)
    assert history["total_auto_submitted"] == 2
    assert history["total_manually_submitted"] == 0
    stats = await submitter.stats()
    assert stats["total_auto_submitted"] == 2
    assert stats["tasks"][0]["task_id"] == task.id

    with pytest.raises(TaskNotFound):
        await submitter.history(999)


@pytest.mark.asyncio
async def test_background_loop_sweeps(db, session, submitter):
    task = await task_with_drafts(session, ["s1"])

    submitter.start()
    assert submitter.is_running
    try:
        for _ in range(100):
            await asyncio.sleep(0.05)
            if (await fetch(db, task.id, "s1")).status == "submitted":
                break
    finally:
        await submitter.stop()

    assert not submitter.is_running
    assert (await fetch(db, task.id, "s1")).is_auto_submitted is True
