"""Runtime configuration for agent execution and closed-loop quality control."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_EVAL_MATRIX_PATH = Path(__file__).resolve().parent / "evaluation" / "eval_matrix.json"


@dataclass(slots=True)
class LlmSettings:
    """Chat-completions endpoint settings."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    timeout_seconds: float = 60.0
    default_model: str = "gpt-4o-mini"


@dataclass(slots=True)
class EvaluationSettings:
    """Quality scoring settings."""

    matrix_path: Path = DEFAULT_EVAL_MATRIX_PATH
    model: str = "gpt-4o-mini"
    models: tuple[str, ...] = ()
    autofix_model: str = "gpt-4o"


@dataclass(slots=True)
class ClosedLoopSettings:
    """Evaluate/fix/re-run loop settings."""

    default_max_iterations: int = 3
    default_enabled: bool = False


@dataclass(slots=True)
class SelfRepairSettings:
    """Agent health check settings."""

    sample_size: int = 10
    min_sample_size: int = 5
    failure_threshold: float = 0.6
    model: str = "gpt-4o"
    interval_seconds: int = 3_600


@dataclass(slots=True)
class QueueSettings:
    """Durable job queue and worker settings."""

    attempts: int = 3
    backoff_ms: int = 1_000
    concurrency: int = 5
    poll_interval_seconds: float = 1.0
    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    stale_job_seconds: int = 1_800
    bus_request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_loop.db")
    sqlite_busy_timeout_ms: int = 5_000
    llm: LlmSettings = field(default_factory=LlmSettings)
    evaluation: EvaluationSettings = field(default_factory=EvaluationSettings)
    closed_loop: ClosedLoopSettings = field(default_factory=ClosedLoopSettings)
    self_repair: SelfRepairSettings = field(default_factory=SelfRepairSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        matrix_path = os.getenv("AGENT_LOOP_EVAL_MATRIX_PATH")
        worker_id = os.getenv("AGENT_LOOP_WORKER_ID")
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_LOOP_DB_PATH", ".agent_loop.db")),
            sqlite_busy_timeout_ms=_env_int("AGENT_LOOP_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            llm=LlmSettings(
                base_url=os.getenv("AGENT_LOOP_LLM_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("AGENT_LOOP_LLM_API_KEY") or None,
                timeout_seconds=_env_float("AGENT_LOOP_LLM_TIMEOUT_SECONDS", 60.0),
                default_model=os.getenv("AGENT_LOOP_LLM_DEFAULT_MODEL", "gpt-4o-mini"),
            ),
            evaluation=EvaluationSettings(
                matrix_path=Path(matrix_path) if matrix_path else DEFAULT_EVAL_MATRIX_PATH,
                model=os.getenv("AGENT_LOOP_EVAL_MODEL", "gpt-4o-mini"),
                models=_env_csv("AGENT_LOOP_EVAL_MODELS"),
                autofix_model=os.getenv("AGENT_LOOP_AUTOFIX_MODEL", "gpt-4o"),
            ),
            closed_loop=ClosedLoopSettings(
                default_max_iterations=_env_int("AGENT_LOOP_DEFAULT_MAX_ITERATIONS", 3),
                default_enabled=_env_bool("AGENT_LOOP_CLOSED_LOOP_DEFAULT", default=False),
            ),
            self_repair=SelfRepairSettings(
                sample_size=_env_int("AGENT_LOOP_REPAIR_SAMPLE_SIZE", 10),
                min_sample_size=_env_int("AGENT_LOOP_REPAIR_MIN_SAMPLE", 5),
                failure_threshold=_env_float("AGENT_LOOP_REPAIR_FAILURE_THRESHOLD", 0.6),
                model=os.getenv("AGENT_LOOP_REPAIR_MODEL", "gpt-4o"),
                interval_seconds=_env_int("AGENT_LOOP_REPAIR_INTERVAL_SECONDS", 3_600),
            ),
            queue=QueueSettings(
                attempts=_env_int("AGENT_LOOP_QUEUE_ATTEMPTS", 3),
                backoff_ms=_env_int("AGENT_LOOP_QUEUE_BACKOFF_MS", 1_000),
                concurrency=_env_int("AGENT_LOOP_QUEUE_CONCURRENCY", 5),
                poll_interval_seconds=_env_float("AGENT_LOOP_WORKER_POLL_SECONDS", 1.0),
                worker_id=worker_id or f"{socket.gethostname()}:{os.getpid()}",
                stale_job_seconds=_env_int("AGENT_LOOP_STALE_JOB_SECONDS", 1_800),
                bus_request_timeout_seconds=_env_float(
                    "AGENT_LOOP_BUS_REQUEST_TIMEOUT_SECONDS",
                    30.0,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.queue.attempts <= 0:
            raise ValueError("AGENT_LOOP_QUEUE_ATTEMPTS must be a positive integer.")
        if self.queue.backoff_ms < 0:
            raise ValueError("AGENT_LOOP_QUEUE_BACKOFF_MS must be >= 0.")
        if self.queue.concurrency <= 0:
            raise ValueError("AGENT_LOOP_QUEUE_CONCURRENCY must be a positive integer.")
        if self.queue.bus_request_timeout_seconds <= 0:
            raise ValueError("AGENT_LOOP_BUS_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.closed_loop.default_max_iterations < 0:
            raise ValueError("AGENT_LOOP_DEFAULT_MAX_ITERATIONS must be >= 0.")
        if not 0.0 <= self.self_repair.failure_threshold <= 1.0:
            raise ValueError("AGENT_LOOP_REPAIR_FAILURE_THRESHOLD must be within [0, 1].")
        if self.self_repair.min_sample_size <= 0:
            raise ValueError("AGENT_LOOP_REPAIR_MIN_SAMPLE must be a positive integer.")
        if self.self_repair.sample_size < self.self_repair.min_sample_size:
            raise ValueError(
                "AGENT_LOOP_REPAIR_SAMPLE_SIZE must be >= AGENT_LOOP_REPAIR_MIN_SAMPLE.",
            )

    def rater_models(self) -> tuple[str, ...]:
        """Models used for evaluation; more than one enables consensus scoring."""

        return self.evaluation.models or (self.evaluation.model,)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error


def _env_csv(name: str) -> tuple[str, ...]:
    value = os.getenv(name, "")
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
