"""
Tests for the Phase 2 step pipeline.

Tests cover:
- Sequential execution and halting on failure
- Retry of transient errors only
- Skips for absent optional inputs
- Resume from the first non-succeeded step
- Cancellation
- Declared ordering validation
"""

import pytest

from provchestra.credentials import SQL_AUDIENCE, StaticTokenSource
from provchestra.errors import (
    AuthenticationError,
    Cancelled,
    ConfigurationError,
    PermanentError,
    TransientError,
)
from provchestra.pipeline import ConfigurationStep, PipelineResult, RetryPolicy, StepPipeline
from provchestra.schemas import StepResult, StepStatus


class RecordingStep(ConfigurationStep):
    """Step that records calls and raises queued errors before succeeding."""

    def __init__(self, name, errors=(), requires=(), optional_inputs=(), after=(), calls=None):
        self.name = name
        self.requires = tuple(requires)
        self.optional_inputs = tuple(optional_inputs)
        self.after = tuple(after)
        self.errors = list(errors)
        self.calls = calls if calls is not None else []

    def apply(self, ctx):
        self.calls.append(self.name)
        if self.errors:
            raise self.errors.pop(0)
        return {"step": self.name}


def five_steps(calls, **errors_by_index):
    steps = []
    for index in range(1, 6):
        steps.append(RecordingStep(f"step-{index}", errors=errors_by_index.get(f"s{index}", ()), calls=calls))
    return steps


@pytest.fixture
def ctx(make_context, full_outputs):
    return make_context(full_outputs)


class TestRun:
    """Tests for StepPipeline.run()."""

    def test_all_succeed_in_order(self, ctx, retry_policy):
        calls = []
        result = StepPipeline(five_steps(calls), retry_policy).run(ctx)
        assert result.success
        assert calls == ["step-1", "step-2", "step-3", "step-4", "step-5"]
        assert [r.attempts for r in result.results] == [1, 1, 1, 1, 1]
        assert result.results[0].output == {"step": "step-1"}

    def test_transient_failure_on_step_three_records_one_retry(self, ctx, retry_policy, clock):
        calls = []
        steps = five_steps(calls, s3=[TransientError("throttled")])
        result = StepPipeline(steps, retry_policy).run(ctx)

        assert result.success
        third = result.get("step-3")
        assert third.status == StepStatus.SUCCEEDED
        assert third.attempts == 2
        assert third.retries == 1
        assert calls.count("step-3") == 2
        assert clock.sleeps == [1.0]

    def test_authentication_failure_on_step_two_halts(self, ctx, retry_policy):
        calls = []
        steps = five_steps(calls, s2=[AuthenticationError("denied")])
        result = StepPipeline(steps, retry_policy).run(ctx)

        assert not result.success
        assert result.failed_step == "step-2"
        assert result.get("step-1").succeeded
        assert result.get("step-2").attempts == 1
        assert result.error["type"] == "AuthenticationError"
        assert result.error["transient"] is False
        for name in ("step-3", "step-4", "step-5"):
            assert result.get(name) is None
        assert calls == ["step-1", "step-2"]

    def test_rejected_token_is_dropped(self, make_context, full_outputs, retry_policy, clock):
        source = StaticTokenSource(clock=clock)
        ctx = make_context(full_outputs, token_source=source)
        ctx.credentials.acquire(SQL_AUDIENCE)
        steps = [RecordingStep("login", errors=[AuthenticationError("login failed", audience=SQL_AUDIENCE)])]

        StepPipeline(steps, retry_policy).run(ctx)
        ctx.credentials.acquire(SQL_AUDIENCE)
        assert source.fetch_count == 2

    def test_transient_exhausts_attempts(self, ctx, retry_policy, clock):
        steps = [RecordingStep("flaky", errors=[TransientError("busy")] * 5)]
        result = StepPipeline(steps, retry_policy).run(ctx)
        assert result.failed_step == "flaky"
        assert result.get("flaky").attempts == 3
        assert result.error["transient"] is True
        assert clock.sleeps == [1.0, 2.0]

    def test_unknown_exception_not_retried(self, ctx, retry_policy):
        steps = [RecordingStep("boom", errors=[ValueError("bad state")])]
        result = StepPipeline(steps, retry_policy).run(ctx)
        assert result.get("boom").attempts == 1
        assert result.error["type"] == "ValueError"

    def test_builtin_timeout_retried(self, ctx, retry_policy):
        steps = [RecordingStep("slow", errors=[TimeoutError("read timed out")])]
        result = StepPipeline(steps, retry_policy).run(ctx)
        assert result.get("slow").attempts == 2

    def test_step_max_attempts_override(self, ctx, retry_policy):
        step = RecordingStep("once", errors=[TransientError("busy")])
        step.max_attempts = 1
        result = StepPipeline([step], retry_policy).run(ctx)
        assert result.get("once").attempts == 1

    def test_error_message_sanitized(self, ctx, retry_policy):
        steps = [RecordingStep("leaky", errors=[PermanentError("login failed for Bearer eyJabc.def.ghi")])]
        result = StepPipeline(steps, retry_policy).run(ctx)
        assert "eyJabc" not in result.error["message"]

    def test_on_result_called_per_step(self, ctx, retry_policy):
        recorded = []
        StepPipeline(five_steps([]), retry_policy).run(ctx, on_result=recorded.append)
        assert [r.step_name for r in recorded] == [f"step-{i}" for i in range(1, 6)]


class TestInputs:
    """Tests for required and optional step inputs."""

    def test_missing_optional_input_skips(self, make_context, core_outputs, retry_policy):
        calls = []
        steps = [
            RecordingStep("before", calls=calls),
            RecordingStep("ai", optional_inputs=("openAIEndpoint",), calls=calls),
            RecordingStep("after", calls=calls),
        ]
        result = StepPipeline(steps, retry_policy).run(make_context(core_outputs))
        assert result.success
        skipped = result.get("ai")
        assert skipped.status == StepStatus.SKIPPED_MISSING_OPTIONAL_INPUT
        assert skipped.missing_inputs == ("openAIEndpoint",)
        assert skipped.attempts == 0
        assert calls == ["before", "after"]

    def test_missing_required_input_fails_without_attempt(self, make_context, core_outputs, retry_policy):
        calls = []
        steps = [RecordingStep("needs-ai", requires=("openAIEndpoint",), calls=calls)]
        result = StepPipeline(steps, retry_policy).run(make_context(core_outputs))
        assert result.failed_step == "needs-ai"
        assert result.get("needs-ai").attempts == 0
        assert result.error["type"] == "MissingOutputError"
        assert calls == []


class TestResume:
    """Tests for resuming from prior StepResults."""

    def test_resume_restarts_at_failed_step(self, ctx, retry_policy):
        first = StepPipeline(five_steps([], s3=[PermanentError("broken")]), retry_policy).run(ctx)
        assert first.failed_step == "step-3"

        calls = []
        resumed = StepPipeline(five_steps(calls), retry_policy).run(ctx, prior_results=first.results)
        assert resumed.success
        assert calls == ["step-3", "step-4", "step-5"]
        assert resumed.get("step-1").carried_over
        assert resumed.get("step-2").carried_over
        assert not resumed.get("step-3").carried_over

    def test_resume_carries_skips(self, ctx, retry_policy):
        prior = [
            StepResult("step-1", StepStatus.SUCCEEDED, 1),
            StepResult("step-2", StepStatus.SKIPPED_MISSING_OPTIONAL_INPUT, missing_inputs=("x",)),
        ]
        calls = []
        resumed = StepPipeline(five_steps(calls), retry_policy).run(ctx, prior_results=prior)
        assert calls == ["step-3", "step-4", "step-5"]
        assert resumed.get("step-2").skipped

    def test_carried_results_reported(self, ctx, retry_policy):
        prior = [StepResult("step-1", StepStatus.SUCCEEDED, 1)]
        recorded = []
        StepPipeline(five_steps([]), retry_policy).run(ctx, prior_results=prior, on_result=recorded.append)
        assert recorded[0].step_name == "step-1"
        assert recorded[0].carried_over


class TestCancellation:
    """Tests for cancellation between steps."""

    def test_cancel_before_next_step(self, ctx, retry_policy):
        calls = []

        class CancellingStep(RecordingStep):
            def apply(self, inner_ctx):
                inner_ctx.cancel.set()
                return super().apply(inner_ctx)

        steps = [CancellingStep("first", calls=calls), RecordingStep("second", calls=calls)]
        result = StepPipeline(steps, retry_policy).run(ctx)
        assert result.cancelled
        assert not result.success
        assert calls == ["first"]
        assert result.get("second") is None

    def test_cancelled_error_marks_cancelled(self, ctx, retry_policy):
        steps = [RecordingStep("waiting", errors=[Cancelled("database")])]
        result = StepPipeline(steps, retry_policy).run(ctx)
        assert result.cancelled
        assert result.failed_step == "waiting"
        assert result.get("waiting").attempts == 1


class TestValidation:
    """Tests for pipeline construction."""

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            StepPipeline([RecordingStep("a"), RecordingStep("a")])

    def test_after_unknown(self):
        with pytest.raises(ConfigurationError, match="unknown"):
            StepPipeline([RecordingStep("a", after=("ghost",))])

    def test_after_out_of_order(self):
        with pytest.raises(ConfigurationError, match="declared before"):
            StepPipeline([RecordingStep("b", after=("a",)), RecordingStep("a")])

    def test_unnamed(self):
        with pytest.raises(ConfigurationError, match="no name"):
            StepPipeline([RecordingStep("")])


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_delay_capped(self):
        policy = RetryPolicy(backoff_seconds=2, backoff_multiplier=2, max_backoff_seconds=5)
        assert [policy.delay(n) for n in (1, 2, 3)] == [2, 4, 5]

    def test_invalid(self):
        with pytest.raises(ConfigurationError):
            RetryPolicy(max_attempts=0)

    def test_pipeline_result_to_dict(self):
        result = PipelineResult(failed_step="x", error={"type": "E"})
        data = result.to_dict()
        assert data["success"] is False
        assert data["failed_step"] == "x"
