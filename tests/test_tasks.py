from datetime import timedelta

import pytest

from classjudge import tasks
from classjudge.errors import AlreadySubmitted, ConcurrentUpdate, DeadlinePassed, DraftNotFound, TaskNotFound
from classjudge.models import utcnow


async def open_task(session, **overrides):
    fields = dict(teacher_id="teacher-1", title="Essay", deadline=utcnow() + timedelta(hours=1))
    fields.update(overrides)
    return await tasks.create_task(session, **fields)


@pytest.mark.asyncio
async def test_draft_saves_bump_version(session):
    task = await open_task(session)

    row = await tasks.save_draft(session, task, "s1", "first")
    assert row.status == "draft"
    assert row.version == 1

    row = await tasks.save_draft(session, task, "s1", "second", expected_version=1)
    assert row.content == "second"
    assert row.version == 2


@pytest.mark.asyncio
async def test_stale_version_rejected(session):
    task = await open_task(session)
    await tasks.save_draft(session, task, "s1", "first")
    await tasks.save_draft(session, task, "s1", "second")

    with pytest.raises(ConcurrentUpdate):
        await tasks.save_draft(session, task, "s1", "from an old tab", expected_version=1)


@pytest.mark.asyncio
async def test_one_row_per_student(session):
    task = await open_task(session)
    await tasks.save_draft(session, task, "s1", "mine")
    await tasks.save_draft(session, task, "s2", "theirs")
    await tasks.save_draft(session, task, "s1", "mine again")

    rows = await tasks.list_task_submissions(session, task.id)
    assert sorted((r.student_id, r.content) for r in rows) == [("s1", "mine again"), ("s2", "theirs")]


@pytest.mark.asyncio
async def test_submitted_work_is_final(session):
    task = await open_task(session)
    await tasks.save_draft(session, task, "s1", "draft")

    row = await tasks.submit_task_work(session, task, "s1")
    assert row.status == "submitted"
    assert row.content == "draft"
    assert row.is_auto_submitted is False

    with pytest.raises(AlreadySubmitted):
        await tasks.save_draft(session, task, "s1", "changes")
    with pytest.raises(AlreadySubmitted):
        await tasks.submit_task_work(session, task, "s1", "again")
    with pytest.raises(AlreadySubmitted):
        await tasks.discard_draft(session, task, "s1")


@pytest.mark.asyncio
async def test_submit_without_draft(session):
    task = await open_task(session)
    row = await tasks.submit_task_work(session, task, "s1", "straight in")
    assert (row.status, row.content) == ("submitted", "straight in")


@pytest.mark.asyncio
async def test_deadline_blocks_student_writes(session):
    task = await open_task(session, deadline=utcnow() - timedelta(minutes=1))

    with pytest.raises(DeadlinePassed):
        await tasks.save_draft(session, task, "s1", "late")
    with pytest.raises(DeadlinePassed):
        await tasks.submit_task_work(session, task, "s1", "late")


@pytest.mark.asyncio
async def test_discard_draft(session):
    task = await open_task(session)
    await tasks.save_draft(session, task, "s1", "scratch")

    await tasks.discard_draft(session, task, "s1")

    assert await tasks.get_submission(session, task.id, "s1") is None
    with pytest.raises(DraftNotFound):
        await tasks.discard_draft(session, task, "s1")


@pytest.mark.asyncio
async def test_unknown_task(session):
    with pytest.raises(TaskNotFound):
        await tasks.get_task(session, 404)
