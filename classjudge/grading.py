"""Judge operations bound to persistence: problems, test cases, submissions."""
import logging
import os
import zipfile
from typing import BinaryIO, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from classjudge.config import DEFAULT_POINT_WEIGHT
from classjudge.errors import DuplicateSlug, InvalidInput, LanguageNotAllowed, ProblemNotFound
from classjudge.executor import Executor
from classjudge.judge import GradeReport, Judge, JudgeCase, SampleReport
from classjudge.languages import LANGUAGES
from classjudge.models import Problem, Submission, TestCase

logger = logging.getLogger(__name__)


async def create_problem(
    session: AsyncSession,
    created_by: str,
    title: str,
    slug: str,
    statement: str,
    constraints: str = "",
    difficulty: str = "easy",
    allowed_languages: Optional[List[str]] = None,
    samples: Optional[List[dict]] = None,
    default_templates: Optional[dict] = None,
    classroom_id: Optional[str] = None,
) -> Problem:
    slug = slug.strip().lower()
    existing = await session.execute(select(Problem.id).where(Problem.slug == slug))
    if existing.scalar_one_or_none() is not None:
        raise DuplicateSlug(f"Slug already exists: {slug}")

    problem = Problem(
        title=title.strip(),
        slug=slug,
        statement=statement,
        constraints=constraints or "",
        difficulty=difficulty or "easy",
        allowed_languages=list(allowed_languages) if allowed_languages else list(LANGUAGES),
        samples=samples or [],
        default_templates=default_templates or {},
        classroom_id=classroom_id,
        created_by=created_by,
    )
    session.add(problem)
    await session.commit()
    await session.refresh(problem)
    logger.info(f"[Problem {problem.slug}] Created by {created_by}")
    return problem


async def load_problem(session: AsyncSession, problem_id: int) -> Problem:
    problem = await session.get(Problem, problem_id)
    if problem is None or not problem.is_active:
        raise ProblemNotFound(f"Problem not found: {problem_id}")
    return problem


def check_language(problem: Problem, language: str):
    if problem.allowed_languages and language not in problem.allowed_languages:
        raise LanguageNotAllowed(f"Language not allowed for this problem: {language}")


async def add_test_cases(session: AsyncSession, problem: Problem, cases: Iterable[dict]) -> int:
    """Append cases after the existing ones; cases are hidden unless told otherwise."""
    result = await session.execute(
        select(func.max(TestCase.position)).where(TestCase.problem_id == problem.id)
    )
    position = result.scalar_one_or_none()
    position = -1 if position is None else position

    cases = list(cases)
    for case in cases:
        if case.get("point_weight") is not None and case["point_weight"] < 0:
            raise InvalidInput(f"point_weight must not be negative: {case['point_weight']}")

    added = 0
    for case in cases:
        position += 1
        weight = case.get("point_weight")
        session.add(TestCase(
            problem_id=problem.id,
            is_hidden=case.get("is_hidden") is not False,
            input=case.get("input") or "",
            expected_output=case.get("expected_output") or "",
            point_weight=weight if weight is not None else DEFAULT_POINT_WEIGHT,
            timeout_ms=case.get("timeout_ms") or None,
            position=position,
        ))
        added += 1
    await session.flush()

    hidden = await session.execute(
        select(func.count(TestCase.id)).where(TestCase.problem_id == problem.id, TestCase.is_hidden.is_(True))
    )
    problem.hidden_test_count = hidden.scalar_one()
    await session.commit()
    logger.info(f"[Problem {problem.slug}] Added {added} test cases ({problem.hidden_test_count} hidden)")
    return added


def read_testcase_archive(fileobj: BinaryIO) -> List[Tuple[str, str]]:
    """Read N.in / N.out pairs from a zip, in numeric order.

    Directory structure inside the archive is flattened; inputs without a
    matching output are skipped.
    """
    inputs, outputs = {}, {}
    with zipfile.ZipFile(fileobj, "r") as zf:
        for name in zf.namelist():
            basename = os.path.basename(name)
            stem, ext = os.path.splitext(basename)
            if not basename or ext not in (".in", ".out"):
                continue
            with zf.open(name) as src:
                text = src.read().decode("utf-8", errors="replace").replace("\r\n", "\n")
            (inputs if ext == ".in" else outputs)[stem] = text

    def order(stem: str):
        return (0, int(stem), "") if stem.isdigit() else (1, 0, stem)

    return [(inputs[stem], outputs[stem]) for stem in sorted(inputs, key=order) if stem in outputs]


async def run_samples(session: AsyncSession, executor: Executor, problem_id: int,
                      language: str, code: str) -> SampleReport:
    """Feedback run on the visible samples; nothing is persisted."""
    language = language.lower()
    problem = await load_problem(session, problem_id)
    check_language(problem, language)
    judge = Judge(executor, language, code, label=f"samples:{problem.slug}")
    return await judge.run_samples(problem.samples or [])


async def submit_solution(session: AsyncSession, executor: Executor, problem_id: int,
                          student_id: str, language: str, code: str) -> Submission:
    """Grade against every case and store exactly one Submission."""
    language = language.lower()
    problem = await load_problem(session, problem_id)
    check_language(problem, language)

    result = await session.execute(
        select(TestCase)
        .where(TestCase.problem_id == problem.id)
        .order_by(TestCase.position, TestCase.id)
    )
    cases = [JudgeCase.from_test_case(tc) for tc in result.scalars().all()]

    judge = Judge(executor, language, code, label=f"{problem.slug}/{student_id}")
    report: GradeReport = await judge.grade(cases)

    submission = Submission(
        problem_id=problem.id,
        student_id=student_id,
        language=language,
        code=code,
        status=report.status.value,
        score=report.score,
        total_points=report.total_points,
        test_results=[r.to_dict() for r in report.results],
    )
    session.add(submission)
    await session.commit()
    await session.refresh(submission)
    logger.info(
        f"[Judge #{submission.id}] Result: {submission.status}, "
        f"Score: {submission.score}/{submission.total_points}"
    )
    return submission


async def list_submissions(session: AsyncSession, student_id: str,
                           problem_id: Optional[int] = None, limit: int = 50) -> List[Submission]:
    query = (
        select(Submission)
        .where(Submission.student_id == student_id)
        .order_by(Submission.created_at.desc(), Submission.id.desc())
        .limit(limit)
    )
    if problem_id is not None:
        query = query.where(Submission.problem_id == problem_id)
    result = await session.execute(query)
    return list(result.scalars().all())


def problem_to_dict(problem: Problem) -> dict:
    """Student-visible fields only."""
    return {
        "id": problem.id,
        "title": problem.title,
        "slug": problem.slug,
        "statement": problem.statement,
        "constraints": problem.constraints,
        "difficulty": problem.difficulty,
        "allowed_languages": problem.allowed_languages,
        "samples": problem.samples,
        "default_templates": problem.default_templates,
        "hidden_test_count": problem.hidden_test_count,
        "classroom_id": problem.classroom_id,
    }


def submission_to_dict(submission: Submission, include_results: bool = True) -> dict:
    data = {
        "id": submission.id,
        "problem_id": submission.problem_id,
        "student_id": submission.student_id,
        "language": submission.language,
        "status": submission.status,
        "score": submission.score,
        "total_points": submission.total_points,
        "created_at": submission.created_at.isoformat() if submission.created_at else None,
    }
    if include_results:
        data["test_results"] = submission.test_results
    return data
