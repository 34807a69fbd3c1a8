from typing import Optional


class ExecutionError(Exception):
    """Base class for everything that stops a program from producing a result."""

    kind = "system_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidInput(ExecutionError):
    kind = "invalid_input"


class UnsupportedLanguage(ExecutionError):
    kind = "unsupported_language"


class EngineUnavailable(ExecutionError):
    """The language is declared but no local runtime/compiler was found."""

    kind = "engine_unavailable"

    def __init__(self, message: str = "", install_instructions: Optional[str] = None):
        super().__init__(message)
        self.install_instructions = install_instructions


class EngineBusy(ExecutionError):
    """The execution queue is full."""

    kind = "busy"


class CompileError(ExecutionError):
    kind = "compile_error"

    def __init__(self, stderr: str):
        super().__init__(stderr)
        self.stderr = stderr


class ExecutionTimeout(ExecutionError):
    kind = "timeout"

    def __init__(self, timeout_ms: int):
        super().__init__(f"Execution timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ExecutionFailed(ExecutionError):
    """Spawn or filesystem failure on the host side."""

    kind = "system_error"


class TaskError(Exception):
    pass


class TaskNotFound(TaskError):
    pass


class DeadlineNotSet(TaskError):
    pass


class DeadlinePassed(TaskError):
    pass


class AlreadySubmitted(TaskError):
    pass


class DraftNotFound(TaskError):
    pass


class ConcurrentUpdate(TaskError):
    """The row changed since the caller last read it."""


class LanguageNotAllowed(ExecutionError):
    kind = "language_not_allowed"


class ProblemNotFound(Exception):
    pass


class DuplicateSlug(Exception):
    pass
