import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from classjudge.config import DEFAULT_POINT_WEIGHT
from classjudge.errors import (
    CompileError,
    EngineBusy,
    ExecutionFailed,
    ExecutionTimeout,
)
from classjudge.executor import ExecutionRequest, Executor
from classjudge.models import JudgeStatus

logger = logging.getLogger(__name__)

# Verdict labels kept for hidden cases instead of raw stderr
VERDICT_WRONG_ANSWER = "Wrong answer"
VERDICT_RUNTIME_ERROR = "Runtime error"
VERDICT_TIME_LIMIT = "Time limit exceeded"
VERDICT_COMPILE_ERROR = "Compile error"
VERDICT_SYSTEM_ERROR = "System error"


def normalize(text: Optional[str]) -> str:
    return (text or "").strip()


@dataclass
class JudgeCase:
    input: str
    expected_output: str
    is_hidden: bool = False
    point_weight: int = DEFAULT_POINT_WEIGHT
    timeout_ms: Optional[int] = None
    test_case_id: Optional[int] = None

    @classmethod
    def from_sample(cls, sample: dict) -> "JudgeCase":
        return cls(
            input=sample.get("input") or "",
            expected_output=sample.get("expected_output") or "",
        )

    @classmethod
    def from_test_case(cls, tc) -> "JudgeCase":
        return cls(
            input=tc.input or "",
            expected_output=tc.expected_output or "",
            is_hidden=bool(tc.is_hidden),
            point_weight=tc.point_weight if tc.point_weight is not None else DEFAULT_POINT_WEIGHT,
            timeout_ms=tc.timeout_ms or None,
            test_case_id=tc.id,
        )


class CaseResult:
    def __init__(self, case: JudgeCase, passed: bool = False, output: str = "",
                 runtime_ms: int = 0, error: str = "", verdict: str = ""):
        self.case = case
        self.passed = passed
        self.output = output
        self.runtime_ms = runtime_ms
        self.error = error
        self.verdict = verdict

    def to_dict(self) -> dict:
        """Stored/returned form. Hidden cases never carry output or expected output."""
        hidden = self.case.is_hidden
        return {
            "test_case_id": self.case.test_case_id,
            "is_hidden": hidden,
            "passed": self.passed,
            "output": "" if hidden else self.output,
            "expected_output": "" if hidden else normalize(self.case.expected_output),
            "runtime_ms": self.runtime_ms,
            "error": self.verdict if hidden else self.error,
        }


@dataclass
class SampleReport:
    passed_all: bool
    results: List[CaseResult]

    def to_dict(self) -> dict:
        return {"passed_all": self.passed_all, "results": [r.to_dict() for r in self.results]}


@dataclass
class GradeReport:
    score: int
    total_points: int
    results: List[CaseResult]

    @property
    def status(self) -> JudgeStatus:
        return JudgeStatus.SUCCESS if self.score == self.total_points else JudgeStatus.FAILED


class Judge:
    """Runs one submission against an ordered list of cases.

    Cases run sequentially. Request-level problems (unknown language, invalid
    code, missing runtime) are raised before the first case. A compile error
    fails every remaining case without running it; timeouts and host
    failures only fail the case they happened on.
    """

    def __init__(self, executor: Executor, language: str, code: str, label: str = ""):
        self.executor = executor
        self.language = language
        self.code = code
        self.label = label

    async def run_samples(self, samples: Iterable[dict]) -> SampleReport:
        cases = [JudgeCase.from_sample(s) for s in samples]
        results = await self._run_all(cases)
        return SampleReport(passed_all=all(r.passed for r in results), results=results)

    async def grade(self, cases: Iterable[JudgeCase]) -> GradeReport:
        cases = list(cases)
        results = await self._run_all(cases)

        total_points = sum(c.point_weight for c in cases)
        score = sum(r.case.point_weight for r in results if r.passed)
        logger.info(f"[Judge {self.label}] Score {score}/{total_points}")
        return GradeReport(score=score, total_points=total_points, results=results)

    async def _run_all(self, cases: List[JudgeCase]) -> List[CaseResult]:
        await self.executor.check(self.language, self.code)

        results = []
        compile_error: Optional[CompileError] = None
        for idx, case in enumerate(cases, 1):
            if compile_error is not None:
                results.append(CaseResult(case, error=compile_error.stderr, verdict=VERDICT_COMPILE_ERROR))
                continue
            try:
                result = await self._run_case(case)
            except CompileError as e:
                logger.info(f"[Judge {self.label}] Compile error on test {idx}")
                compile_error = e
                result = CaseResult(case, error=e.stderr, verdict=VERDICT_COMPILE_ERROR)
            results.append(result)
        return results

    async def _run_case(self, case: JudgeCase) -> CaseResult:
        request = ExecutionRequest(
            language=self.language,
            code=self.code,
            stdin=case.input,
            timeout_ms=case.timeout_ms,
        )
        try:
            result = await self.executor.execute(request)
        except ExecutionTimeout as e:
            return CaseResult(case, runtime_ms=e.timeout_ms, error=VERDICT_TIME_LIMIT, verdict=VERDICT_TIME_LIMIT)
        except (ExecutionFailed, EngineBusy) as e:
            logger.error(f"[Judge {self.label}] System error: {e.message}")
            return CaseResult(case, error=e.message, verdict=VERDICT_SYSTEM_ERROR)

        output = normalize(result.output)
        if result.is_runtime_error:
            passed, verdict = False, VERDICT_RUNTIME_ERROR
        elif output == normalize(case.expected_output):
            passed, verdict = True, ""
        else:
            passed, verdict = False, VERDICT_WRONG_ANSWER
        return CaseResult(
            case,
            passed=passed,
            output=output,
            runtime_ms=result.runtime_ms,
            error=result.error,
            verdict=verdict,
        )
