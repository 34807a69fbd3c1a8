import asyncio
import logging
import math
import os
import re
import shutil
import signal
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

from classjudge.config import (
    ALLOWED_ENV_KEYS,
    COMPILE_TIMEOUT_SECONDS,
    MAX_CODE_LENGTH,
    MAX_CONCURRENT_EXECUTIONS,
    MAX_FILE_SIZE,
    MAX_OPEN_FILES,
    MAX_OUTPUT_SIZE,
    MAX_PROCESSES,
    MAX_QUEUED_EXECUTIONS,
    MEMORY_LIMIT_MB,
    SANDBOX_PREFIX,
    SCRATCH_DIR,
)
from classjudge.errors import (
    CompileError,
    EngineBusy,
    EngineUnavailable,
    ExecutionFailed,
    ExecutionTimeout,
    InvalidInput,
    UnsupportedLanguage,
)
from classjudge.languages import LanguageProfile, LanguageRegistry, resolve_filename

logger = logging.getLogger(__name__)

# Input hygiene only; isolation comes from the rlimits and SANDBOX_PREFIX
DANGEROUS_PATTERNS = [
    re.compile(p)
    for p in (
        r"process\.exit",
        r"require\(",
        r"import\s+os",
        r"subprocess",
        r"exec\(",
        r"eval\(",
        r"system\(",
        r"shell_exec",
        r"passthru",
        r"file_get_contents",
        r"file_put_contents",
    )
]

FILENAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")


@dataclass
class ExecutionRequest:
    language: str
    code: str
    stdin: Optional[str] = None
    filename: Optional[str] = None
    timeout_ms: Optional[int] = None


@dataclass
class ExecutionResult:
    output: str
    error: str
    exit_code: int
    runtime_ms: int = 0

    @property
    def is_runtime_error(self) -> bool:
        return self.exit_code != 0

    def to_dict(self) -> dict:
        return {
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "runtimeMs": self.runtime_ms,
        }


def validate_code(code: str, max_length: int = MAX_CODE_LENGTH):
    if not code or not code.strip():
        raise InvalidInput("Code cannot be empty")
    if len(code) > max_length:
        raise InvalidInput(f"Code too long (max {max_length:,} characters)")
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(code):
            raise InvalidInput("Code contains potentially dangerous operations")


def _kill_process_group(process: asyncio.subprocess.Process):
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # already exited
    except PermissionError:
        process.kill()


def _decode(data: bytes) -> Tuple[str, bool]:
    truncated = len(data) > MAX_OUTPUT_SIZE
    if truncated:
        data = data[:MAX_OUTPUT_SIZE]
    return data.decode("utf-8", errors="replace"), truncated


class _Timeout(Exception):
    pass


class Executor:
    """Runs one piece of source code once and captures its result.

    Every execution gets its own scratch directory, which is removed on every
    exit path. At most ``max_concurrent`` children run at once; up to
    ``max_queued`` callers may wait for a slot, beyond that ``EngineBusy`` is
    raised.
    """

    def __init__(
        self,
        registry: Optional[LanguageRegistry] = None,
        scratch_root: Path = SCRATCH_DIR,
        max_concurrent: int = MAX_CONCURRENT_EXECUTIONS,
        max_queued: int = MAX_QUEUED_EXECUTIONS,
        sandbox_prefix: Sequence[str] = SANDBOX_PREFIX,
        memory_limit_mb: int = MEMORY_LIMIT_MB,
    ):
        self.registry = registry or LanguageRegistry()
        self.scratch_root = Path(scratch_root)
        self.max_queued = max_queued
        self.sandbox_prefix = list(sandbox_prefix)
        self.memory_limit_mb = memory_limit_mb
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._waiting = 0

    async def check(self, language: str, code: str, filename: Optional[str] = None) -> LanguageProfile:
        """Reject a request before anything touches the filesystem."""
        profile = self.registry.get(language)
        if profile is None:
            raise UnsupportedLanguage(f"Unsupported language: {language}")

        validate_code(code)
        if filename is not None and not FILENAME_RE.match(filename):
            raise InvalidInput("Invalid filename")

        await self.registry.ensure_probed()
        if not self.registry.is_available(profile.name):
            tool = (profile.compile_command or profile.run_command)[0]
            raise EngineUnavailable(
                f"Local compiler not available: {tool}. {profile.install_instructions}",
                install_instructions=profile.install_instructions,
            )
        return profile

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        profile = await self.check(request.language, request.code, request.filename)
        timeout_ms = request.timeout_ms or profile.timeout_ms

        async with self._slot():
            work_dir = self._make_scratch()
            try:
                return await self._run_in(work_dir, profile, request, timeout_ms)
            finally:
                self._cleanup(work_dir)

    @asynccontextmanager
    async def _slot(self):
        if self._semaphore.locked() and self._waiting >= self.max_queued:
            raise EngineBusy("Too many executions in progress, try again shortly")
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        try:
            yield
        finally:
            self._semaphore.release()

    def _make_scratch(self) -> Path:
        try:
            self.scratch_root.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix="exec_", dir=str(self.scratch_root)))
        except OSError as e:
            raise ExecutionFailed(f"Could not create scratch directory: {e}")

    def _cleanup(self, work_dir: Path):
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[Exec {work_dir.name}] Cleanup failed: {e}")

    async def _run_in(self, work_dir: Path, profile: LanguageProfile,
                      request: ExecutionRequest, timeout_ms: int) -> ExecutionResult:
        name = resolve_filename(profile, request.code, request.filename)
        source_file = work_dir / f"{name}{profile.extension}"
        exe_file = work_dir / name
        try:
            source_file.write_text(request.code, encoding="utf-8")
        except OSError as e:
            raise ExecutionFailed(f"Could not write source file: {e}")

        fields = {"src": str(source_file), "exe": str(exe_file), "dir": str(work_dir), "name": name}

        if profile.compiled:
            await self._compile(work_dir, profile, fields)

        command = self.sandbox_prefix + [part.format(**fields) for part in profile.run_command]
        timeout = timeout_ms / 1000.0
        logger.debug(f"[Exec {work_dir.name}] Running: {' '.join(command)}")

        try:
            returncode, stdout, stderr, elapsed_ms = await self._spawn(
                command, work_dir, request.stdin, timeout, self._limits(profile, timeout)
            )
        except _Timeout:
            logger.info(f"[Exec {work_dir.name}] {profile.name} timed out after {timeout_ms}ms")
            raise ExecutionTimeout(timeout_ms)

        output, out_truncated = _decode(stdout)
        error, err_truncated = _decode(stderr)
        if out_truncated or err_truncated:
            error = (error + f"\nOutput too large (limit: {MAX_OUTPUT_SIZE} bytes), truncated").strip()

        return ExecutionResult(
            output=output.strip(),
            error=error.strip(),
            exit_code=returncode,
            runtime_ms=elapsed_ms,
        )

    async def _compile(self, work_dir: Path, profile: LanguageProfile, fields: dict):
        command = [part.format(**fields) for part in profile.compile_command]
        logger.debug(f"[Exec {work_dir.name}] Compile command: {' '.join(command)}")
        try:
            returncode, _, stderr, _ = await self._spawn(
                command, work_dir, None, COMPILE_TIMEOUT_SECONDS, None
            )
        except _Timeout:
            raise CompileError("Compilation timeout")

        if returncode != 0:
            message, _ = _decode(stderr)
            raise CompileError(message.strip()[:2000])

    async def _spawn(self, command: List[str], work_dir: Path, stdin: Optional[str],
                     timeout: float, preexec_fn) -> Tuple[int, bytes, bytes, int]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(work_dir),
                env=self._environment(work_dir),
                start_new_session=True,
                preexec_fn=preexec_fn,
            )
        except (OSError, ValueError) as e:
            raise ExecutionFailed(f"Failed to start {command[0]}: {e}")
        except Exception as e:
            # SubprocessError from a failing preexec_fn
            raise ExecutionFailed(f"Failed to start {command[0]}: {type(e).__name__}: {e}")

        start_time = time.perf_counter()
        input_data = stdin.encode("utf-8") if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(input_data), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_process_group(process)
            await process.wait()
            raise _Timeout()
        except asyncio.CancelledError:
            _kill_process_group(process)
            raise

        elapsed_ms = int((time.perf_counter() - start_time) * 1000)
        return process.returncode, stdout, stderr, elapsed_ms

    def _environment(self, work_dir: Path) -> dict:
        env = {key: os.environ[key] for key in ALLOWED_ENV_KEYS if key in os.environ}
        env.setdefault("PATH", os.defpath)
        env["TMPDIR"] = str(work_dir)
        return env

    def _limits(self, profile: LanguageProfile, timeout: float):
        """Per-process ceilings applied in the child before exec."""
        if resource is None:
            return None

        cpu_seconds = max(1, math.ceil(timeout)) + 1
        mem_bytes = max(16, self.memory_limit_mb) * 1024 * 1024
        constrained = profile.constrained

        def _apply():
            _lower_limit(resource.RLIMIT_CPU, cpu_seconds)
            _lower_limit(resource.RLIMIT_FSIZE, MAX_FILE_SIZE)
            _lower_limit(resource.RLIMIT_NOFILE, MAX_OPEN_FILES)
            if constrained:
                _lower_limit(resource.RLIMIT_AS, mem_bytes)
                _lower_limit(resource.RLIMIT_NPROC, MAX_PROCESSES)

        return _apply


def _lower_limit(which: int, value: int):
    # never above the current hard limit
    _, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (value, value))
