"""
Remote batch submitter for a running ClassJudge server.

Submits many solutions to one problem with bounded concurrency and reports
how many were accepted. Useful for checking a problem's hidden cases against
known-correct and known-incorrect reference solutions.
"""
import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp
from tqdm import tqdm

logger = logging.getLogger(__name__)

ACCEPTED = "Accepted"


def _error_result(verdict: str, message: str) -> Dict:
    return {
        "success": False,
        "verdict": verdict,
        "message": message,
        "score": 0,
        "total_points": 0,
        "passed": False,
        "failed_test": None,
    }


def normalize_response(status_code: int, body) -> Dict:
    """Turn a submit response (or error response) into a uniform verdict dict."""
    if not isinstance(body, dict):
        return _error_result("System Error", f"Unexpected response ({status_code})")

    if status_code >= 400:
        detail = body.get("detail")
        if isinstance(detail, dict):
            kind = detail.get("kind", "system_error")
            message = detail.get("message", "")
        else:
            kind, message = "system_error", str(detail or "")
        # busy / engine_unavailable / system_error mean the judge never ran the code
        verdict = "Rejected" if kind in ("invalid_input", "unsupported_language", "language_not_allowed") else "System Error"
        result = _error_result(verdict, message)
        result["kind"] = kind
        return result

    results = body.get("test_results") or []
    failed_test = next((idx for idx, r in enumerate(results, 1) if not r.get("passed")), None)
    passed = body.get("status") == "success"
    return {
        "success": True,
        "verdict": ACCEPTED if passed else "Failed",
        "message": results[failed_test - 1].get("error", "") if failed_test else "",
        "score": body.get("score", 0),
        "total_points": body.get("total_points", 0),
        "passed": passed,
        "failed_test": failed_test,
        "submission_id": body.get("id"),
    }


class RemoteJudgeSubmitter:
    def __init__(self, base_url: str = "http://localhost:8000", student_id: str = "batch-submitter",
                 max_concurrent: int = 4, request_timeout: float = 120):
        """
        Args:
            base_url: server address
            student_id: identity the submissions are recorded under
            max_concurrent: submissions in flight at once
        """
        self.base_url = base_url.rstrip("/")
        self.student_id = student_id
        self.max_concurrent = max_concurrent
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)

    @property
    def headers(self) -> Dict[str, str]:
        return {"X-User-Id": self.student_id, "X-User-Role": "student"}

    def submit_url(self, problem_id: int) -> str:
        return f"{self.base_url}/api/judge/problems/{problem_id}/submit"

    async def submit_code_async(self, session: aiohttp.ClientSession, problem_id: int,
                                code: str, language: str = "python") -> Dict:
        """Submit one solution and wait for its graded result."""
        start_time = time.time()
        try:
            async with session.post(
                self.submit_url(problem_id),
                json={"language": language, "code": code},
                headers=self.headers,
            ) as response:
                try:
                    body = await response.json()
                except aiohttp.ContentTypeError:
                    body = None
                result = normalize_response(response.status, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return _error_result("System Error", f"Submit failed: {e}")

        result["total_time"] = time.time() - start_time
        return result

    async def batch_submit_async(self, problem_id: int, batch_code: List[str],
                                 language: str = "python") -> List[Dict]:
        semaphore = asyncio.Semaphore(self.max_concurrent)
        results: List[Optional[Dict]] = [None] * len(batch_code)

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            with tqdm(total=len(batch_code), desc=f"Submitting {problem_id}") as pbar:

                async def one(idx: int, code: str):
                    async with semaphore:
                        results[idx] = await self.submit_code_async(session, problem_id, code, language)
                    pbar.update(1)

                await asyncio.gather(*(one(idx, code) for idx, code in enumerate(batch_code)))
        return results

    def submit_code(self, problem_id: int, code: str, language: str = "python") -> Dict:
        return self.batch_submit_code(problem_id, [code], language=language)["results"][0]

    def batch_submit_code(self, problem_id: int, batch_code: List[str],
                          original_result: str = "correct", language: str = "python") -> Dict:
        """
        Submit every solution and summarize.

        Args:
            original_result: "correct" if the solutions are expected to pass,
                "incorrect" if they are expected to fail

        Returns:
            rates over the submissions that were actually judged, plus the
            accepted submissions and every raw result
        """
        results = asyncio.run(self.batch_submit_async(problem_id, batch_code, language))

        passed_submissions = [
            {"index": idx, "code": code, "result": result}
            for idx, (code, result) in enumerate(zip(batch_code, results))
            if result["passed"]
        ]
        error_cnt = sum(1 for r in results if not r["success"])
        if error_cnt:
            logger.warning(f"[Submitter] {error_cnt}/{len(results)} submissions were not judged")

        valid_cnt = len(results) - error_cnt
        pass_rate = len(passed_submissions) / valid_cnt if valid_cnt else 0.0

        summary = {
            "judged": valid_cnt,
            "errors": error_cnt,
            "passed_submissions": passed_submissions,
            "results": results,
        }
        if original_result == "correct":
            summary.update({"TPR": pass_rate, "FNR": 1 - pass_rate if valid_cnt else 0.0})
        else:
            summary.update({"TNR": 1 - pass_rate if valid_cnt else 0.0, "FPR": pass_rate})
        return summary


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Submit solution files to a ClassJudge problem")
    parser.add_argument("problem_id", type=int)
    parser.add_argument("files", nargs="+", type=Path)
    parser.add_argument("--language", default="python")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--concurrency", type=int, default=4)
    parser.add_argument("--expect", choices=["correct", "incorrect"], default="correct")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    submitter = RemoteJudgeSubmitter(base_url=args.base_url, max_concurrent=args.concurrency)
    codes = [path.read_text(encoding="utf-8") for path in args.files]
    summary = submitter.batch_submit_code(args.problem_id, codes, args.expect, args.language)

    for path, result in zip(args.files, summary["results"]):
        print(f"{path.name}: {result['verdict']} ({result['score']}/{result['total_points']})")
    rate_key = "TPR" if args.expect == "correct" else "TNR"
    print(f"{rate_key}: {summary[rate_key]:.2%} over {summary['judged']} judged submissions")
