"""Tests for bounded retry schedules."""

from __future__ import annotations

import pytest

from boxkeeper.retry import (
    ENGINE_CONNECT,
    REGISTRY_PULL,
    TUNNEL_READY,
    RetryExhausted,
    RetryPolicy,
    retry_with_backoff,
)


def _always_fail(attempt: int) -> None:
    raise ConnectionError(f"boom {attempt}")


class TestPolicies:
    def test_tunnel_schedule(self) -> None:
        assert TUNNEL_READY.delays() == pytest.approx([0.1, 0.2, 0.4])

    def test_engine_schedule(self) -> None:
        assert ENGINE_CONNECT.max_attempts == 3
        assert ENGINE_CONNECT.delays() == pytest.approx([0.1, 0.2])

    def test_pull_schedule(self) -> None:
        assert REGISTRY_PULL.delays() == pytest.approx([1.0, 2.0])


class TestRetryWithBackoff:
    def test_first_success_does_not_sleep(self) -> None:
        sleeps: list[float] = []
        assert retry_with_backoff(lambda a: "ok", REGISTRY_PULL, sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_succeeds_after_failures(self) -> None:
        sleeps: list[float] = []
        calls: list[int] = []

        def flaky(attempt: int) -> str:
            calls.append(attempt)
            if attempt < 2:
                raise ConnectionError("not yet")
            return "done"

        result = retry_with_backoff(flaky, REGISTRY_PULL, sleep=sleeps.append)
        assert result == "done"
        assert calls == [0, 1, 2]
        assert sleeps == pytest.approx([1.0, 2.0])

    def test_exhausted_collects_every_error(self) -> None:
        sleeps: list[float] = []
        with pytest.raises(RetryExhausted) as exc_info:
            retry_with_backoff(_always_fail, REGISTRY_PULL, sleep=sleeps.append)
        assert exc_info.value.attempts == 3
        assert [str(e) for e in exc_info.value.errors] == ["boom 0", "boom 1", "boom 2"]
        assert str(exc_info.value.last_error) == "boom 2"
        assert sleeps == pytest.approx([1.0, 2.0])

    def test_delay_first_waits_before_every_attempt(self) -> None:
        sleeps: list[float] = []
        with pytest.raises(RetryExhausted):
            retry_with_backoff(_always_fail, TUNNEL_READY, sleep=sleeps.append)
        assert sleeps == pytest.approx([0.1, 0.2, 0.4])

    def test_unlisted_errors_propagate_immediately(self) -> None:
        sleeps: list[float] = []

        def bad(attempt: int) -> None:
            raise KeyError("nope")

        with pytest.raises(KeyError):
            retry_with_backoff(bad, REGISTRY_PULL, retry_on=(ConnectionError,), sleep=sleeps.append)
        assert sleeps == []

    def test_custom_multiplier(self) -> None:
        policy = RetryPolicy(max_attempts=4, base_delay=0.5, multiplier=3.0)
        assert policy.delays() == pytest.approx([0.5, 1.5, 4.5])
