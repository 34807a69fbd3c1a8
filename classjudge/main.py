import io
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Response, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classjudge import grading, tasks
from classjudge.autosubmit import AutoSubmitter
from classjudge.config import AUTO_SUBMIT_ENABLED, LOG_LEVEL
from classjudge.errors import (
    AlreadySubmitted,
    CompileError,
    ConcurrentUpdate,
    DeadlineNotSet,
    DeadlinePassed,
    DraftNotFound,
    DuplicateSlug,
    EngineUnavailable,
    ExecutionError,
    InvalidInput,
    ProblemNotFound,
    TaskError,
    TaskNotFound,
)
from classjudge.executor import FILENAME_RE, ExecutionRequest, Executor
from classjudge.languages import DEFAULT_TEMPLATE, LANGUAGES, TEMPLATES, LanguageRegistry, resolve_filename
from classjudge.models import CompiledCode, get_session, init_db, utcnow

logger = logging.getLogger(__name__)

app = FastAPI(title="ClassJudge")

registry = LanguageRegistry()
executor = Executor(registry)
autosubmitter = AutoSubmitter()

ROLES = ("student", "teacher", "admin")

EXECUTION_STATUS = {
    "invalid_input": 400,
    "unsupported_language": 400,
    "language_not_allowed": 400,
    "engine_unavailable": 503,
    "busy": 429,
    "timeout": 408,
    "system_error": 500,
}

TASK_STATUS = {
    TaskNotFound: 404,
    DraftNotFound: 404,
    DeadlineNotSet: 400,
    DeadlinePassed: 400,
    AlreadySubmitted: 409,
    ConcurrentUpdate: 409,
}


@app.on_event("startup")
async def startup():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await init_db()
    await registry.probe()
    if AUTO_SUBMIT_ENABLED:
        autosubmitter.start()


@app.on_event("shutdown")
async def shutdown():
    await autosubmitter.stop()


# ===== Dependencies =====

@dataclass
class Caller:
    user_id: str
    role: str


async def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    if not x_user_id or x_user_role not in ROLES:
        raise HTTPException(401, "Missing or invalid caller identity")
    return Caller(user_id=x_user_id, role=x_user_role)


def require_role(*roles: str):
    async def dependency(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in roles:
            raise HTTPException(403, f"Requires role: {', '.join(roles)}")
        return caller
    return dependency


def get_executor() -> Executor:
    return executor


def get_autosubmitter() -> AutoSubmitter:
    return autosubmitter


def execution_error(e: ExecutionError) -> HTTPException:
    detail = {"kind": e.kind, "message": e.message}
    if isinstance(e, EngineUnavailable):
        detail["install_instructions"] = e.install_instructions
    return HTTPException(EXECUTION_STATUS.get(e.kind, 500), detail)


def task_error(e: TaskError) -> HTTPException:
    return HTTPException(TASK_STATUS.get(type(e), 400), str(e))


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ===== Request bodies =====

class RunRequest(BaseModel):
    language: str
    code: str
    input: Optional[str] = None
    filename: Optional[str] = None


class CodeRequest(BaseModel):
    language: str
    code: str


class SampleIn(BaseModel):
    input: str = ""
    expected_output: str
    explanation: str = ""


class ProblemCreate(BaseModel):
    title: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    statement: str
    constraints: str = ""
    difficulty: Literal["easy", "medium", "hard"] = "easy"
    allowed_languages: Optional[List[str]] = None
    samples: List[SampleIn] = []
    default_templates: Dict[str, str] = {}
    classroom_id: Optional[str] = None


class TestCaseIn(BaseModel):
    input: str = ""
    expected_output: str
    is_hidden: bool = True
    point_weight: int = Field(1, ge=0)
    timeout_ms: Optional[int] = Field(None, gt=0)


class TestCasesIn(BaseModel):
    test_cases: List[TestCaseIn] = Field(..., min_length=1)


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    deadline: Optional[datetime] = None
    classroom_id: Optional[str] = None


class DraftIn(BaseModel):
    content: str
    expected_version: Optional[int] = None


class SubmitIn(BaseModel):
    content: Optional[str] = None


# ===== Compiler APIs =====

@app.get("/api/compiler/languages")
async def list_languages(runner: Executor = Depends(get_executor)):
    """Supported languages with local availability"""
    await runner.registry.ensure_probed()
    return {"languages": runner.registry.describe()}


@app.get("/api/compiler/status")
async def compiler_status(runner: Executor = Depends(get_executor)):
    await runner.registry.ensure_probed()
    return {
        "tools": runner.registry.status(),
        "languages": {name: runner.registry.is_available(name) for name in runner.registry.names()},
    }


@app.get("/api/compiler/templates/{language}")
async def get_template(language: str):
    language = language.lower()
    return {"language": language, "template": TEMPLATES.get(language, DEFAULT_TEMPLATE)}


@app.get("/api/compiler/health")
async def health(runner: Executor = Depends(get_executor)):
    names = runner.registry.names()
    return {
        "status": "ok",
        "available_languages": [name for name in names if runner.registry.is_available(name)],
    }


async def _run(request: RunRequest, runner: Executor) -> dict:
    try:
        result = await runner.execute(ExecutionRequest(
            language=request.language,
            code=request.code,
            stdin=request.input,
            filename=request.filename,
        ))
    except CompileError as e:
        return {
            "success": False,
            "kind": e.kind,
            "output": "",
            "error": e.stderr,
            "exitCode": 1,
            "runtimeMs": 0,
        }
    except ExecutionError as e:
        raise execution_error(e)
    return {"success": True, **result.to_dict()}


@app.post("/api/compiler/run")
async def run_code(request: RunRequest, runner: Executor = Depends(get_executor)):
    """Execute code once, nothing is stored"""
    return await _run(request, runner)


@app.post("/api/compiler/run-and-save")
async def run_and_save(
    request: RunRequest,
    caller: Caller = Depends(require_role("student")),
    runner: Executor = Depends(get_executor),
    session: AsyncSession = Depends(get_session),
):
    result = await _run(request, runner)

    profile = runner.registry.get(request.language)
    record = CompiledCode(
        user_id=caller.user_id,
        language=profile.name,
        filename=resolve_filename(profile, request.code, request.filename),
        extension=profile.extension,
        code=request.code,
        input=request.input or "",
        output=result["output"],
        error=result["error"],
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return {**result, "id": record.id}


def compiled_code_to_dict(c: CompiledCode, include_code: bool = True) -> dict:
    data = {
        "id": c.id,
        "user_id": c.user_id,
        "language": c.language,
        "filename": f"{c.filename}{c.extension}",
        "error": c.error,
        "created_at": c.created_at.isoformat(),
    }
    if include_code:
        data.update(code=c.code, input=c.input, output=c.output)
    return data


def attachment(code: str, filename: str) -> Response:
    return Response(
        content=code,
        media_type="text/plain",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _load_code(session: AsyncSession, code_id: int, caller: Caller) -> CompiledCode:
    """Students only see their own saved code; teachers and admins see any."""
    record = await session.get(CompiledCode, code_id)
    if record is None or (caller.role == "student" and record.user_id != caller.user_id):
        raise HTTPException(404, "Code not found")
    return record


@app.get("/api/compiler/history")
async def compile_history(
    limit: int = 20,
    caller: Caller = Depends(require_role("student")),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(CompiledCode)
        .where(CompiledCode.user_id == caller.user_id)
        .order_by(CompiledCode.created_at.desc(), CompiledCode.id.desc())
        .limit(limit)
    )
    return [compiled_code_to_dict(c) for c in result.scalars().all()]


@app.get("/api/compiler/all-student-code")
async def all_student_code(
    user_id: Optional[str] = None,
    limit: int = 100,
    caller: Caller = Depends(require_role("teacher", "admin")),
    session: AsyncSession = Depends(get_session),
):
    """Saved runs across students, newest first, without code bodies"""
    query = (
        select(CompiledCode)
        .order_by(CompiledCode.created_at.desc(), CompiledCode.id.desc())
        .limit(limit)
    )
    if user_id is not None:
        query = query.where(CompiledCode.user_id == user_id)
    result = await session.execute(query)
    return [compiled_code_to_dict(c, include_code=False) for c in result.scalars().all()]


@app.get("/api/compiler/code/{code_id}")
async def get_code(
    code_id: int,
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
):
    return compiled_code_to_dict(await _load_code(session, code_id, caller))


@app.get("/api/compiler/download/{code_id}")
async def download_saved_code(
    code_id: int,
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_session),
):
    record = await _load_code(session, code_id, caller)
    return attachment(record.code, f"{record.filename}{record.extension}")


@app.post("/api/compiler/download")
async def download_code(request: RunRequest, runner: Executor = Depends(get_executor)):
    """Return the posted code as a source file"""
    profile = runner.registry.get(request.language)
    if profile is None:
        raise HTTPException(400, {"kind": "unsupported_language",
                                  "message": f"Unsupported language: {request.language}"})
    if request.filename is not None and not FILENAME_RE.match(request.filename):
        raise HTTPException(400, {"kind": "invalid_input", "message": "Invalid filename"})
    name = resolve_filename(profile, request.code, request.filename)
    return attachment(request.code, f"{name}{profile.extension}")


# ===== Judge APIs =====

async def _load_owned_problem(session: AsyncSession, problem_id: int, caller: Caller):
    try:
        problem = await grading.load_problem(session, problem_id)
    except ProblemNotFound:
        raise HTTPException(404, "Problem not found")
    if caller.role != "admin" and problem.created_by != caller.user_id:
        raise HTTPException(403, "Not the owner of this problem")
    return problem


@app.post("/api/judge/problems")
async def create_problem(
    body: ProblemCreate,
    caller: Caller = Depends(require_role("teacher", "admin")),
    session: AsyncSession = Depends(get_session),
):
    unknown = [lang for lang in body.allowed_languages or [] if lang not in LANGUAGES]
    if unknown:
        raise HTTPException(400, {"kind": "unsupported_language",
                                  "message": f"Unsupported languages: {', '.join(unknown)}"})
    try:
        problem = await grading.create_problem(
            session,
            created_by=caller.user_id,
            title=body.title,
            slug=body.slug,
            statement=body.statement,
            constraints=body.constraints,
            difficulty=body.difficulty,
            allowed_languages=body.allowed_languages,
            samples=[s.model_dump() for s in body.samples],
            default_templates=body.default_templates,
            classroom_id=body.classroom_id,
        )
    except DuplicateSlug as e:
        raise HTTPException(409, str(e))
    return grading.problem_to_dict(problem)


@app.post("/api/judge/problems/{problem_id}/testcases")
async def add_test_cases(
    problem_id: int,
    body: TestCasesIn,
    caller: Caller = Depends(require_role("teacher", "admin")),
    session: AsyncSession = Depends(get_session),
):
    problem = await _load_owned_problem(session, problem_id, caller)
    try:
        added = await grading.add_test_cases(session, problem, [tc.model_dump() for tc in body.test_cases])
    except InvalidInput as e:
        raise execution_error(e)
    return {"success": True, "added": added, "hidden_test_count": problem.hidden_test_count}


@app.post("/api/judge/problems/{problem_id}/testcases/upload")
async def upload_test_cases(
    problem_id: int,
    testcases: UploadFile = File(...),
    is_hidden: bool = Form(True),
    point_weight: int = Form(1, ge=0),
    caller: Caller = Depends(require_role("teacher", "admin")),
    session: AsyncSession = Depends(get_session),
):
    """Upload a zip of N.in / N.out pairs"""
    problem = await _load_owned_problem(session, problem_id, caller)
    try:
        pairs = grading.read_testcase_archive(io.BytesIO(await testcases.read()))
    except zipfile.BadZipFile as e:
        raise HTTPException(400, f"Failed to extract test cases: {e}")
    if not pairs:
        raise HTTPException(400, "No test cases found in archive")

    cases = [
        {"input": i, "expected_output": o, "is_hidden": is_hidden, "point_weight": point_weight}
        for i, o in pairs
    ]
    try:
        added = await grading.add_test_cases(session, problem, cases)
    except InvalidInput as e:
        raise execution_error(e)
    return {"success": True, "added": added, "hidden_test_count": problem.hidden_test_count}


@app.get("/api/judge/problems/{problem_id}")
async def get_problem(problem_id: int, session: AsyncSession = Depends(get_session)):
    try:
        problem = await grading.load_problem(session, problem_id)
    except ProblemNotFound:
        raise HTTPException(404, "Problem not found")
    return grading.problem_to_dict(problem)


@app.post("/api/judge/problems/{problem_id}/run")
async def run_samples(
    problem_id: int,
    body: CodeRequest,
    caller: Caller = Depends(require_role("student")),
    runner: Executor = Depends(get_executor),
    session: AsyncSession = Depends(get_session),
):
    """Run against the visible samples only"""
    try:
        report = await grading.run_samples(session, runner, problem_id, body.language, body.code)
    except ProblemNotFound:
        raise HTTPException(404, "Problem not found")
    except ExecutionError as e:
        raise execution_error(e)
    return report.to_dict()


@app.post("/api/judge/problems/{problem_id}/submit")
async def submit_solution(
    problem_id: int,
    body: CodeRequest,
    caller: Caller = Depends(require_role("student")),
    runner: Executor = Depends(get_executor),
    session: AsyncSession = Depends(get_session),
):
    try:
        submission = await grading.submit_solution(
            session, runner, problem_id, caller.user_id, body.language, body.code
        )
    except ProblemNotFound:
        raise HTTPException(404, "Problem not found")
    except ExecutionError as e:
        raise execution_error(e)
    return grading.submission_to_dict(submission)


@app.get("/api/judge/submissions/mine")
async def my_submissions(
    problem_id: Optional[int] = None,
    limit: int = 50,
    caller: Caller = Depends(require_role("student")),
    session: AsyncSession = Depends(get_session),
):
    submissions = await grading.list_submissions(session, caller.user_id, problem_id, limit)
    return [grading.submission_to_dict(s, include_results=False) for s in submissions]


# ===== Task APIs =====

@app.post("/api/tasks")
async def create_task(
    body: TaskCreate,
    caller: Caller = Depends(require_role("teacher", "admin")),
    session: AsyncSession = Depends(get_session),
):
    task = await tasks.create_task(
        session,
        teacher_id=caller.user_id,
        title=body.title,
        description=body.description,
        deadline=naive_utc(body.deadline),
        classroom_id=body.classroom_id,
    )
    return tasks.task_to_dict(task)


@app.put("/api/tasks/{task_id}/draft")
async def save_draft(
    task_id: int,
    body: DraftIn,
    caller: Caller = Depends(require_role("student")),
    session: AsyncSession = Depends(get_session),
):
    try:
        task = await tasks.get_task(session, task_id)
        row = await tasks.save_draft(session, task, caller.user_id, body.content, body.expected_version)
    except TaskError as e:
        raise task_error(e)
    return tasks.task_submission_to_dict(row)


@app.delete("/api/tasks/{task_id}/draft")
async def discard_draft(
    task_id: int,
    caller: Caller = Depends(require_role("student")),
    session: AsyncSession = Depends(get_session),
):
    try:
        task = await tasks.get_task(session, task_id)
        await tasks.discard_draft(session, task, caller.user_id)
    except TaskError as e:
        raise task_error(e)
    return {"success": True}


@app.get("/api/tasks/{task_id}/my-submission")
async def my_task_submission(
    task_id: int,
    caller: Caller = Depends(require_role("student")),
    session: AsyncSession = Depends(get_session),
):
    """The caller's own row, with the version to send back as expected_version"""
    try:
        task = await tasks.get_task(session, task_id)
    except TaskError as e:
        raise task_error(e)
    row = await tasks.get_submission(session, task.id, caller.user_id)
    return {
        "task": tasks.task_to_dict(task),
        "has_submission": row is not None,
        "submission": tasks.task_submission_to_dict(row) if row is not None else None,
        "is_overdue": task.deadline is not None and utcnow() > task.deadline,
    }


@app.post("/api/tasks/{task_id}/submit")
async def submit_task(
    task_id: int,
    body: SubmitIn,
    caller: Caller = Depends(require_role("student")),
    session: AsyncSession = Depends(get_session),
):
    try:
        task = await tasks.get_task(session, task_id)
        row = await tasks.submit_task_work(session, task, caller.user_id, body.content)
    except TaskError as e:
        raise task_error(e)
    return tasks.task_submission_to_dict(row)


@app.get("/api/tasks/{task_id}/submissions")
async def list_task_submissions(
    task_id: int,
    caller: Caller = Depends(require_role("teacher", "admin")),
    session: AsyncSession = Depends(get_session),
):
    try:
        task = await tasks.get_task(session, task_id)
    except TaskError as e:
        raise task_error(e)
    if caller.role != "admin" and task.teacher_id != caller.user_id:
        raise HTTPException(403, "Not the owner of this task")
    rows = await tasks.list_task_submissions(session, task_id)
    return [tasks.task_submission_to_dict(r) for r in rows]


# ===== Auto-submission APIs =====

@app.get("/api/auto-submission/stats")
async def auto_submission_stats(
    caller: Caller = Depends(require_role("admin")),
    submitter: AutoSubmitter = Depends(get_autosubmitter),
):
    return await submitter.stats()


@app.post("/api/auto-submission/trigger")
async def trigger_sweep(
    caller: Caller = Depends(require_role("admin")),
    submitter: AutoSubmitter = Depends(get_autosubmitter),
):
    """Run a sweep now; reports skipped if one is already running"""
    logger.info(f"[AutoSubmit] Manual sweep requested by {caller.user_id}")
    report = await submitter.sweep()
    return report.to_dict()


@app.post("/api/auto-submission/trigger/{task_id}")
async def trigger_task(
    task_id: int,
    caller: Caller = Depends(require_role("admin")),
    submitter: AutoSubmitter = Depends(get_autosubmitter),
):
    try:
        report = await submitter.submit_task(task_id)
    except TaskError as e:
        raise task_error(e)
    return report.to_dict()


@app.get("/api/auto-submission/pending")
async def pending_auto_submissions(
    caller: Caller = Depends(require_role("admin")),
    submitter: AutoSubmitter = Depends(get_autosubmitter),
):
    return await submitter.pending()


@app.get("/api/auto-submission/history/{task_id}")
async def auto_submission_history(
    task_id: int,
    caller: Caller = Depends(require_role("teacher", "admin")),
    submitter: AutoSubmitter = Depends(get_autosubmitter),
):
    try:
        history = await submitter.history(task_id)
    except TaskError as e:
        raise task_error(e)
    if caller.role != "admin" and history["teacher_id"] != caller.user_id:
        raise HTTPException(403, "Not the owner of this task")
    return history


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
