from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base, relationship
from datetime import datetime, timezone
import enum

from classjudge.config import DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


def utcnow() -> datetime:
    # naive UTC, SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JudgeStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TaskSubmissionStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"


class Problem(Base):
    __tablename__ = "problems"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(256), nullable=False)
    slug = Column(String(128), unique=True, nullable=False, index=True)
    statement = Column(Text, nullable=False)
    constraints = Column(Text, default="")
    difficulty = Column(String(16), default="easy")
    allowed_languages = Column(JSON, default=list)
    samples = Column(JSON, default=list)  # [{input, expected_output, explanation}]
    default_templates = Column(JSON, default=dict)
    hidden_test_count = Column(Integer, default=0)
    classroom_id = Column(String(64), nullable=True, index=True)
    created_by = Column(String(64), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    test_cases = relationship(
        "TestCase", back_populates="problem", order_by="TestCase.position",
        cascade="all, delete-orphan",
    )


class TestCase(Base):
    __tablename__ = "test_cases"
    __test__ = False  # not a pytest class

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False, index=True)
    is_hidden = Column(Boolean, default=True)
    input = Column(Text, default="")
    expected_output = Column(Text, default="")
    point_weight = Column(Integer, default=1)
    timeout_ms = Column(Integer, nullable=True)  # None: language default
    position = Column(Integer, default=0)  # evaluation order
    created_at = Column(DateTime, default=utcnow)

    problem = relationship("Problem", back_populates="test_cases")


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    language = Column(String(16), nullable=False)
    code = Column(Text, nullable=False)
    status = Column(String(16), default=JudgeStatus.RUNNING.value)
    score = Column(Integer, default=0)
    total_points = Column(Integer, default=0)
    # [{test_case_id, is_hidden, passed, output, expected_output, runtime_ms, error}]
    test_results = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(256), nullable=False)
    description = Column(Text, default="")
    classroom_id = Column(String(64), nullable=True, index=True)
    teacher_id = Column(String(64), nullable=False)
    deadline = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True)
    status = Column(String(16), default="active")  # active / archived
    created_at = Column(DateTime, default=utcnow)

    submissions = relationship(
        "TaskSubmission", back_populates="task", cascade="all, delete-orphan",
    )


class TaskSubmission(Base):
    """One row per (task, student); replaces the nested array on the task."""

    __tablename__ = "task_submissions"
    __table_args__ = (UniqueConstraint("task_id", "student_id", name="uq_task_student"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    student_id = Column(String(64), nullable=False)
    content = Column(Text, default="")
    status = Column(String(16), default=TaskSubmissionStatus.DRAFT.value, index=True)
    is_auto_submitted = Column(Boolean, default=False)
    drafted_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    auto_submitted_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow)
    version = Column(Integer, nullable=False)

    task = relationship("Task", back_populates="submissions")

    __mapper_args__ = {"version_id_col": version}


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    sender_id = Column(String(64), nullable=True)  # None for system notifications
    kind = Column(String(32), nullable=False)
    title = Column(String(256), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class CompiledCode(Base):
    __tablename__ = "compiled_code"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    language = Column(String(16), nullable=False)
    filename = Column(String(64), nullable=False)
    extension = Column(String(8), nullable=False)
    code = Column(Text, nullable=False)
    input = Column(Text, default="")
    output = Column(Text, default="")
    error = Column(Text, default="")
    created_at = Column(DateTime, default=utcnow)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    async with async_session() as session:
        yield session
