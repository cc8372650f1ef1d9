"""
Post-deployment step pipeline (Phase 2).

A pipeline is an ordered list of ConfigurationSteps run strictly in sequence
against one run's DeploymentOutputs:

    firewall -> wait for database -> identity user -> roles -> execute grant
             -> schema -> stored procedures -> app settings

Per step:
- Optional inputs absent -> skipped_missing_optional_input, pipeline continues
- Required input absent -> MissingOutputError, step fails without retry
- Transient errors are retried with capped exponential backoff
- Anything else fails the step; the pipeline halts and keeps prior results

Resume: given the StepResults of an earlier run, leading succeeded/skipped
steps are carried over and execution restarts at the first step that did
not succeed. Every step is idempotent, so re-running one is always safe.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from provchestra.appconfig import AppConfigClient
from provchestra.config import DeploymentConfig
from provchestra.credentials import CredentialProvider
from provchestra.datastore import DatabaseTarget, DataStoreAdmin
from provchestra.errors import AuthenticationError, Cancelled, ConfigurationError, MissingOutputError, is_transient
from provchestra.readiness import ReadinessPoller
from provchestra.resolver import OutputResolver
from provchestra.schemas import StepResult, StepStatus
from provchestra.utils import sanitize_error_message

logger = logging.getLogger(__name__)

# Outputs StepContext.database_target() reads
DATABASE_OUTPUTS = ("sqlServerName", "sqlServerFqdn", "sqlDatabaseName")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetryPolicy:
    """
    Step-level retry for transient errors.

    Attributes:
        max_attempts: Attempts per step, including the first
        backoff_seconds: Delay before the first retry
        backoff_multiplier: Delay growth per retry
        max_backoff_seconds: Upper bound for a single delay
        sleep: Sleep function (injected in tests)
    """
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RetryPolicy":
        """Build a policy from config.RetrySettings."""
        return cls(
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_backoff_seconds=settings.max_backoff_seconds,
            **kwargs,
        )

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-indexed) failed attempt."""
        return min(
            self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1)),
            self.max_backoff_seconds,
        )


@dataclass
class StepContext:
    """Everything a step may touch. Built once per run by the orchestrator."""
    resolver: OutputResolver
    credentials: CredentialProvider
    data_store: DataStoreAdmin
    app_config: AppConfigClient
    poller: ReadinessPoller
    config: DeploymentConfig
    cancel: threading.Event = field(default_factory=threading.Event)

    def database_target(self) -> DatabaseTarget:
        return DatabaseTarget(
            server_name=self.resolver.get("sqlServerName"),
            server_fqdn=self.resolver.get("sqlServerFqdn"),
            database=self.resolver.get("sqlDatabaseName"),
            resource_group=self.config.resource_group,
        )


class ConfigurationStep(ABC):
    """
    A single idempotent post-deployment mutation.

    Subclasses set:
        name: Unique step name
        idempotency: How re-application reaches the same end state
        requires: Outputs that must be present
        optional_inputs: Outputs from optional modules; absence skips the step
        after: Steps that must appear earlier in the pipeline
        max_attempts: Override of the pipeline retry policy
    """

    name: str = ""
    idempotency: str = ""
    requires: tuple[str, ...] = ()
    optional_inputs: tuple[str, ...] = ()
    after: tuple[str, ...] = ()
    max_attempts: Optional[int] = None

    @abstractmethod
    def apply(self, ctx: StepContext) -> Optional[dict[str, Any]]:
        """
        Apply the mutation.

        Returns:
            Optional small JSON-safe summary stored in the StepResult

        Raises:
            TransientError: Safe to retry
            PermanentError: Do not retry
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


@dataclass
class PipelineResult:
    """
    Result of running (or resuming) a pipeline.

    Attributes:
        results: StepResults in execution order; steps after a failure are absent
        failed_step: Name of the step that failed, if any
        error: Error detail of the failing step
        cancelled: True if a cancellation stopped the pipeline
    """
    results: list[StepResult] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.failed_step is None and not self.cancelled

    def get(self, step_name: str) -> Optional[StepResult]:
        for result in self.results:
            if result.step_name == step_name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
        }
        if self.failed_step is not None:
            result["failed_step"] = self.failed_step
        if self.error is not None:
            result["error"] = self.error
        if self.cancelled:
            result["cancelled"] = True
        return result


class StepPipeline:
    """
    Run ConfigurationSteps in declared order.

    Args:
        steps: Ordered steps
        retry_policy: Retry policy for transient errors (default RetryPolicy())

    Raises:
        ConfigurationError: Duplicate step names or violated `after` ordering
    """

    def __init__(self, steps: list[ConfigurationStep], retry_policy: Optional[RetryPolicy] = None):
        self.steps = list(steps)
        self.retry_policy = retry_policy or RetryPolicy()
        self._validate()

    def _validate(self) -> None:
        seen: set[str] = set()
        all_names = {step.name for step in self.steps}
        for step in self.steps:
            if not step.name:
                raise ConfigurationError(f"{type(step).__name__} has no name")
            if step.name in seen:
                raise ConfigurationError(f"Duplicate step name: '{step.name}'")
            for prerequisite in step.after:
                if prerequisite not in all_names:
                    raise ConfigurationError(
                        f"Step '{step.name}' must run after unknown step '{prerequisite}'"
                    )
                if prerequisite not in seen:
                    raise ConfigurationError(
                        f"Step '{step.name}' must run after '{prerequisite}', "
                        f"but is declared before it"
                    )
            seen.add(step.name)

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    def run(
        self,
        ctx: StepContext,
        prior_results: Optional[list[StepResult]] = None,
        on_result: Optional[Callable[[StepResult], None]] = None,
    ) -> PipelineResult:
        """
        Execute the pipeline.

        Args:
            ctx: Step context
            prior_results: StepResults of an earlier run to resume from
            on_result: Called with every recorded StepResult, carried over or
                executed (for persistence)

        Returns:
            PipelineResult
        """
        outcome = PipelineResult()
        start_index = 0

        if prior_results:
            prior_by_name = {r.step_name: r for r in prior_results}
            for index, step in enumerate(self.steps):
                prior = prior_by_name.get(step.name)
                if prior is None or prior.failed:
                    break
                carried = prior.as_carried_over()
                outcome.results.append(carried)
                if on_result is not None:
                    on_result(carried)
                start_index = index + 1
            if start_index:
                logger.info(
                    f"Resuming at step {start_index + 1}/{len(self.steps)}; "
                    f"{start_index} step(s) carried over"
                )

        for step in self.steps[start_index:]:
            if ctx.cancel.is_set():
                logger.warning(f"Cancelled before step {step.name}")
                outcome.cancelled = True
                break

            result = self._run_step(step, ctx)
            outcome.results.append(result)
            if on_result is not None:
                on_result(result)

            if result.failed:
                outcome.failed_step = step.name
                outcome.error = result.error
                outcome.cancelled = (result.error or {}).get("type") == Cancelled.__name__
                logger.error(f"Pipeline halted at {step.name}: {(result.error or {}).get('message')}")
                break

        return outcome

    def _run_step(self, step: ConfigurationStep, ctx: StepContext) -> StepResult:
        started_at = _utcnow()

        missing_optional = ctx.resolver.missing(step.optional_inputs)
        if missing_optional:
            logger.info(f"  skip {step.name}: optional input(s) absent {missing_optional}")
            return StepResult(
                step_name=step.name,
                status=StepStatus.SKIPPED_MISSING_OPTIONAL_INPUT,
                started_at=started_at,
                completed_at=_utcnow(),
                missing_inputs=tuple(missing_optional),
            )

        missing_required = ctx.resolver.missing(step.requires)
        if missing_required:
            error = MissingOutputError(missing_required[0], list(ctx.resolver.outputs))
            logger.error(f"  FAIL {step.name}: required output(s) absent {missing_required}")
            return self._failed(step, 0, started_at, error)

        max_attempts = step.max_attempts or self.retry_policy.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                logger.info(f"  Running: {step.name} (attempt {attempt}/{max_attempts})")
                output = step.apply(ctx) or {}
            except Exception as e:
                if isinstance(e, AuthenticationError):
                    ctx.credentials.invalidate(e.audience)
                retryable = is_transient(e) and not isinstance(e, Cancelled)
                if retryable and attempt < max_attempts and not ctx.cancel.is_set():
                    wait_time = self.retry_policy.delay(attempt)
                    logger.warning(
                        f"  {step.name} attempt {attempt} failed: {sanitize_error_message(e)}. "
                        f"Retrying in {wait_time}s..."
                    )
                    self.retry_policy.sleep(wait_time)
                    continue
                logger.error(f"  FAIL {step.name}: {type(e).__name__}: {sanitize_error_message(e)}")
                return self._failed(step, attempt, started_at, e)

            completed_at = _utcnow()
            logger.info(f"  ok {step.name} ({attempt} attempt(s))")
            return StepResult(
                step_name=step.name,
                status=StepStatus.SUCCEEDED,
                attempts=attempt,
                started_at=started_at,
                completed_at=completed_at,
                output=output,
            )

    @staticmethod
    def _failed(step: ConfigurationStep, attempts: int, started_at: datetime, error: Exception) -> StepResult:
        return StepResult(
            step_name=step.name,
            status=StepStatus.FAILED,
            attempts=attempts,
            started_at=started_at,
            completed_at=_utcnow(),
            error={
                "type": type(error).__name__,
                "message": sanitize_error_message(error),
                "transient": is_transient(error),
            },
        )
