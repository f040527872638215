"""Tests for the resilient call executor and failure classification."""

import json

import pytest
from pydantic import ValidationError

from graph_admin.errors import FailureCategory, GraphFailure
from graph_admin.resilience import (
    FailureClassification,
    ResilientCallExecutor,
    RetryPolicy,
    classify_failure,
    compute_delay,
    retry_after_seconds,
)


def failure(status=None, category=FailureCategory.UNKNOWN, headers=None):
    return GraphFailure("boom", status_code=status, category=category, headers=headers)


class ScriptedOperation:
    """Raises the scripted failures in order, then returns the result."""

    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class AlwaysFails:
    def __init__(self, make_failure):
        self.make_failure = make_failure
        self.calls = 0
        self.raised = []

    def __call__(self):
        self.calls += 1
        exc = self.make_failure()
        self.raised.append(exc)
        raise exc


class TestClassification:
    @pytest.mark.parametrize("status", [429, 503, 504])
    def test_throttling_statuses_are_transient(self, status):
        assert classify_failure(failure(status)) is FailureClassification.TRANSIENT

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 500, 502])
    def test_other_statuses_are_fatal(self, status):
        assert classify_failure(failure(status)) is FailureClassification.FATAL

    def test_service_exception_without_status_is_transient(self):
        exc = failure(status=None, category=FailureCategory.SERVICE_EXCEPTION)
        assert classify_failure(exc) is FailureClassification.TRANSIENT

    def test_plain_exception_is_fatal(self):
        assert classify_failure(ValueError("bad input")) is FailureClassification.FATAL

    def test_message_wording_is_ignored(self):
        exc = GraphFailure("TooManyRequests: throttled", status_code=400, category=FailureCategory.VALIDATION)
        assert classify_failure(exc) is FailureClassification.FATAL

    def test_duck_typed_failure_is_classified(self):
        class SdkError(Exception):
            status_code = 503

        assert classify_failure(SdkError()) is FailureClassification.TRANSIENT


class TestRetryAfter:
    def test_integer_header(self):
        assert retry_after_seconds(failure(429, headers={"Retry-After": "7"})) == 7

    def test_header_lookup_is_case_insensitive(self):
        assert retry_after_seconds(failure(429, headers={"retry-after": " 12 "})) == 12

    @pytest.mark.parametrize("value", ["soon", "1.5", "Wed, 21 Oct 2026 07:28:00 GMT", "-3", ""])
    def test_unparseable_values_are_ignored(self, value):
        assert retry_after_seconds(failure(429, headers={"Retry-After": value})) is None

    def test_missing_headers(self):
        assert retry_after_seconds(failure(429)) is None
        assert retry_after_seconds(ValueError("no headers")) is None


class TestComputeDelay:
    def test_linear_backoff(self):
        policy = RetryPolicy(base_delay_seconds=15)
        assert [compute_delay(policy, n) for n in (1, 2, 3)] == [15, 30, 45]

    def test_exponential_backoff_is_opt_in(self):
        policy = RetryPolicy(base_delay_seconds=2, backoff="exponential")
        assert [compute_delay(policy, n) for n in (1, 2, 3)] == [2, 4, 8]


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 5
        assert policy.base_delay_seconds == 15
        assert policy.backoff == "linear"
        assert policy.log_attempts is False

    @pytest.mark.parametrize(
        "fields",
        [{"max_retries": 0}, {"base_delay_seconds": -1}, {"backoff": "fibonacci"}, {"jitter": 0.1}],
    )
    def test_invalid_policy_rejected(self, fields):
        with pytest.raises(ValidationError):
            RetryPolicy(**fields)


class TestResilientCallExecutor:
    def test_success_on_first_attempt(self, sleeper):
        operation = ScriptedOperation([])
        executor = ResilientCallExecutor(RetryPolicy(), sleep=sleeper)

        assert executor.execute(operation) == "ok"
        assert operation.calls == 1
        assert sleeper.delays == []

    @pytest.mark.parametrize("failures", [1, 2, 4])
    def test_throttled_then_success(self, sleeper, failures):
        operation = ScriptedOperation([failure(429) for _ in range(failures)], result={"value": []})
        executor = ResilientCallExecutor(RetryPolicy(max_retries=5, base_delay_seconds=0), sleep=sleeper)

        assert executor.execute(operation) == {"value": []}
        assert operation.calls == failures + 1

    def test_not_found_is_not_retried(self, sleeper):
        operation = AlwaysFails(lambda: failure(404, FailureCategory.NOT_FOUND))
        executor = ResilientCallExecutor(RetryPolicy(), sleep=sleeper)

        with pytest.raises(GraphFailure) as excinfo:
            executor.execute(operation)

        assert excinfo.value.status_code == 404
        assert operation.calls == 1
        assert sleeper.delays == []

    def test_forbidden_short_circuits(self, sleeper):
        operation = AlwaysFails(lambda: failure(403, FailureCategory.PERMISSION_DENIED))
        executor = ResilientCallExecutor(RetryPolicy(max_retries=5), sleep=sleeper)

        with pytest.raises(GraphFailure):
            executor.execute(operation)

        assert operation.calls == 1
        assert sleeper.delays == []

    def test_exhausted_retries_raise_final_failure(self, sleeper):
        operation = AlwaysFails(lambda: failure(503, FailureCategory.SERVICE_EXCEPTION))
        executor = ResilientCallExecutor(RetryPolicy(max_retries=4, base_delay_seconds=1), sleep=sleeper)

        with pytest.raises(GraphFailure) as excinfo:
            executor.execute(operation)

        assert operation.calls == 4
        assert excinfo.value is operation.raised[-1]
        assert sleeper.delays == [1, 2, 3]

    def test_single_attempt_budget(self, sleeper):
        operation = AlwaysFails(lambda: failure(429))
        executor = ResilientCallExecutor(RetryPolicy(max_retries=1), sleep=sleeper)

        with pytest.raises(GraphFailure):
            executor.execute(operation)

        assert operation.calls == 1
        assert sleeper.delays == []

    def test_retry_after_overrides_computed_delay(self, sleeper):
        operation = ScriptedOperation([failure(429, headers={"Retry-After": "7"})])
        executor = ResilientCallExecutor(RetryPolicy(base_delay_seconds=15), sleep=sleeper)

        executor.execute(operation)

        assert sleeper.delays == [7]

    def test_linear_delay_without_hint(self, sleeper):
        operation = ScriptedOperation([failure(429), failure(429)])
        executor = ResilientCallExecutor(RetryPolicy(base_delay_seconds=15), sleep=sleeper)

        executor.execute(operation)

        assert sleeper.delays == [15, 30]

    def test_unparseable_retry_after_falls_back(self, sleeper):
        operation = ScriptedOperation([failure(503, headers={"Retry-After": "later"})])
        executor = ResilientCallExecutor(RetryPolicy(base_delay_seconds=15), sleep=sleeper)

        assert executor.execute(operation) == "ok"
        assert sleeper.delays == [15]

    def test_throttled_twice_then_success(self, sleeper):
        operation = ScriptedOperation([failure(429), failure(429)], result="done")
        executor = ResilientCallExecutor(RetryPolicy(max_retries=3, base_delay_seconds=1), sleep=sleeper)

        assert executor.execute(operation) == "done"
        assert operation.calls == 3
        assert sleeper.delays == [1, 2]

    def test_service_exception_without_metadata_is_retried(self, sleeper):
        operation = ScriptedOperation([failure(None, FailureCategory.SERVICE_EXCEPTION)])
        executor = ResilientCallExecutor(RetryPolicy(base_delay_seconds=1), sleep=sleeper)

        assert executor.execute(operation) == "ok"
        assert operation.calls == 2

    def test_non_graph_exception_propagates_unchanged(self, sleeper):
        error = KeyError("missing")
        operation = ScriptedOperation([error])
        executor = ResilientCallExecutor(RetryPolicy(), sleep=sleeper)

        with pytest.raises(KeyError) as excinfo:
            executor.execute(operation)

        assert excinfo.value is error
        assert operation.calls == 1

    def test_executor_keeps_no_state_between_calls(self, sleeper):
        executor = ResilientCallExecutor(RetryPolicy(max_retries=2, base_delay_seconds=1), sleep=sleeper)

        assert executor.execute(ScriptedOperation([failure(429)])) == "ok"
        assert executor.execute(ScriptedOperation([failure(429)])) == "ok"
        assert sleeper.delays == [1, 1]

    def test_attempts_are_silent_by_default(self, sleeper, audit_logger, log_stream):
        executor = ResilientCallExecutor(
            RetryPolicy(base_delay_seconds=0), sleep=sleeper, audit_logger=audit_logger
        )
        executor.execute(ScriptedOperation([failure(429)]))

        assert log_stream.getvalue() == ""

    def test_attempt_logging_when_enabled(self, sleeper, audit_logger, log_stream):
        executor = ResilientCallExecutor(
            RetryPolicy(base_delay_seconds=2, log_attempts=True), sleep=sleeper, audit_logger=audit_logger
        )
        executor.execute(ScriptedOperation([failure(429)]), path="/users")

        event = json.loads(log_stream.getvalue().strip())
        assert event["message"] == "graph_call_retrying"
        assert event["level"] == "WARNING"
        assert event["attempt"] == 1
        assert event["delay_seconds"] == 2
        assert event["status"] == 429
        assert event["path"] == "/users"
