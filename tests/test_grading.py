import io
import zipfile

import pytest
from sqlalchemy import func, select

from classjudge import grading
from classjudge.errors import DuplicateSlug, InvalidInput, LanguageNotAllowed, ProblemNotFound
from classjudge.languages import LANGUAGES
from classjudge.models import Submission, TestCase
from tests.fakes import FakeExecutor, answers


async def make_problem(session, **overrides):
    fields = dict(
        created_by="teacher-1",
        title="Sum",
        slug="Sum-Two",
        statement="Print a + b",
        samples=[{"input": "1 2", "expected_output": "3"}],
    )
    fields.update(overrides)
    return await grading.create_problem(session, **fields)


def make_zip(files: dict) -> io.BytesIO:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    buffer.seek(0)
    return buffer


@pytest.mark.asyncio
async def test_create_problem_defaults(session):
    problem = await make_problem(session)

    assert problem.slug == "sum-two"
    assert problem.allowed_languages == list(LANGUAGES)
    assert problem.hidden_test_count == 0
    assert problem.is_active is True


@pytest.mark.asyncio
async def test_duplicate_slug_rejected(session):
    await make_problem(session)
    with pytest.raises(DuplicateSlug):
        await make_problem(session, slug="sum-two")


@pytest.mark.asyncio
async def test_test_cases_hidden_by_default_and_appended(session):
    problem = await make_problem(session)

    await grading.add_test_cases(session, problem, [
        {"input": "1 1", "expected_output": "2"},
        {"input": "2 2", "expected_output": "4", "is_hidden": False},
    ])
    await grading.add_test_cases(session, problem, [{"input": "5 5", "expected_output": "10", "point_weight": 3}])

    result = await session.execute(
        select(TestCase).where(TestCase.problem_id == problem.id).order_by(TestCase.position)
    )
    cases = result.scalars().all()
    assert [c.position for c in cases] == [0, 1, 2]
    assert [c.is_hidden for c in cases] == [True, False, True]
    assert [c.point_weight for c in cases] == [1, 1, 3]
    assert problem.hidden_test_count == 2


def test_archive_pairs_in_numeric_order():
    archive = make_zip({
        "tests/10.in": "ten\r\n",
        "tests/10.out": "10\r\n",
        "2.in": "two",
        "2.out": "2",
        "1.in": "one",
        "1.out": "1",
        "3.in": "orphan input",
        "notes.txt": "ignored",
    })

    pairs = grading.read_testcase_archive(archive)

    assert pairs == [("one", "1"), ("two", "2"), ("ten\n", "10\n")]


@pytest.mark.asyncio
async def test_run_samples_uses_visible_samples_only(session):
    problem = await make_problem(session)
    await grading.add_test_cases(session, problem, [{"input": "secret", "expected_output": "x"}])
    executor = FakeExecutor(answers({"1 2": "3"}))

    report = await grading.run_samples(session, executor, problem.id, "python", "print(3)")

    assert report.passed_all is True
    assert [r.stdin for r in executor.requests] == ["1 2"]


@pytest.mark.asyncio
async def test_submit_grades_and_stores_one_submission(session):
    problem = await make_problem(session)
    await grading.add_test_cases(session, problem, [
        {"input": "1 1", "expected_output": "2", "is_hidden": False},
        {"input": "2 2", "expected_output": "4"},
        {"input": "3 3", "expected_output": "6", "point_weight": 2},
    ])
    executor = FakeExecutor(answers({"1 1": "2", "2 2": "4", "3 3": "5"}))

    submission = await grading.submit_solution(session, executor, problem.id, "student-1", "python", "print()")

    assert submission.score == 2
    assert submission.total_points == 4
    assert submission.status == "failed"
    assert [r.stdin for r in executor.requests] == ["1 1", "2 2", "3 3"]

    visible, hidden, hidden_failed = submission.test_results
    assert visible["output"] == "2" and visible["expected_output"] == "2"
    assert hidden["output"] == "" and hidden["expected_output"] == ""
    assert hidden_failed["passed"] is False
    assert hidden_failed["output"] == "" and hidden_failed["expected_output"] == ""

    count = await session.execute(select(func.count(Submission.id)))
    assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_language_must_be_allowed(session):
    problem = await make_problem(session, allowed_languages=["cpp"])
    with pytest.raises(LanguageNotAllowed):
        await grading.submit_solution(session, FakeExecutor(), problem.id, "student-1", "python", "print()")


@pytest.mark.asyncio
async def test_missing_problem(session):
    with pytest.raises(ProblemNotFound):
        await grading.run_samples(session, FakeExecutor(), 999, "python", "print()")


@pytest.mark.asyncio
async def test_list_submissions_is_per_student(session):
    problem = await make_problem(session)
    executor = FakeExecutor()
    await grading.submit_solution(session, executor, problem.id, "a", "python", "print()")
    await grading.submit_solution(session, executor, problem.id, "a", "python", "print(1)")
    await grading.submit_solution(session, executor, problem.id, "b", "python", "print()")

    mine = await grading.list_submissions(session, "a")

    assert len(mine) == 2
    assert {s.student_id for s in mine} == {"a"}
    assert "test_results" not in grading.submission_to_dict(mine[0], include_results=False)


@pytest.mark.asyncio
async def test_zero_weight_is_kept_and_negative_rejected(session):
    problem = await make_problem(session)

    await grading.add_test_cases(session, problem, [
        {"input": "1 1", "expected_output": "2", "point_weight": 0},
        {"input": "2 2", "expected_output": "4"},
    ])
    with pytest.raises(InvalidInput, match="point_weight"):
        await grading.add_test_cases(session, problem, [
            {"input": "3 3", "expected_output": "6", "point_weight": -1},
            {"input": "4 4", "expected_output": "8"},
        ])

    result = await session.execute(
        select(TestCase).where(TestCase.problem_id == problem.id).order_by(TestCase.position)
    )
    assert [c.point_weight for c in result.scalars().all()] == [0, 1]

    executor = FakeExecutor(answers({"1 1": "wrong", "2 2": "4"}))
    submission = await grading.submit_solution(session, executor, problem.id, "student-1", "python", "print()")
    assert (submission.score, submission.total_points) == (1, 1)
    assert 0 <= submission.score <= submission.total_points


@pytest.mark.asyncio
async def test_cases_without_timeout_use_language_default(session):
    problem = await make_problem(session)
    await grading.add_test_cases(session, problem, [
        {"input": "1 1", "expected_output": "2"},
        {"input": "2 2", "expected_output": "4", "timeout_ms": 1500},
    ])
    executor = FakeExecutor(answers({"1 1": "2", "2 2": "4"}))

    await grading.run_samples(session, executor, problem.id, "go", "package main")
    await grading.submit_solution(session, executor, problem.id, "student-1", "go", "package main")

    assert [r.timeout_ms for r in executor.requests] == [None, None, 1500]


@pytest.mark.asyncio
async def test_language_name_is_case_insensitive(session):
    problem = await make_problem(session, allowed_languages=["python"])
    executor = FakeExecutor(answers({"1 2": "3"}))

    report = await grading.run_samples(session, executor, problem.id, "Python", "print(3)")
    submission = await grading.submit_solution(session, executor, problem.id, "student-1", "PYTHON", "print()")

    assert report.passed_all is True
    assert submission.language == "python"
    assert {r.language for r in executor.requests} == {"python"}
