"""Tests for pull/build progress reporting."""

from __future__ import annotations

from conftest import FakeClock

from boxkeeper.progress import ProgressReporter, format_elapsed


def _reporter(clock: FakeClock, context: str | None = "Building image") -> ProgressReporter:
    return ProgressReporter(context, enabled=False, clock=clock)


class TestFormatElapsed:
    def test_minutes_seconds(self) -> None:
        assert format_elapsed(0) == "00:00"
        assert format_elapsed(75.9) == "01:15"

    def test_hours(self) -> None:
        assert format_elapsed(3725) == "01:02:05"


class TestSpinnerThrottle:
    def test_rapid_updates_are_dropped(self, clock: FakeClock) -> None:
        progress = _reporter(clock)
        progress.update_spinner("build", "first")
        clock.now += 0.05
        progress.update_spinner("build", "second")
        assert "first" in (progress.description("build") or "")

    def test_update_after_interval_shows(self, clock: FakeClock) -> None:
        progress = _reporter(clock)
        progress.update_spinner("build", "first")
        clock.now += 0.2
        progress.update_spinner("build", "second")
        assert "second" in (progress.description("build") or "")

    def test_step_lines_bypass_throttle(self, clock: FakeClock) -> None:
        progress = _reporter(clock)
        progress.update_spinner("build", "installing")
        clock.now += 0.01
        progress.update_spinner("build", "Step 2/9 : RUN apt-get update")
        description = progress.description("build") or ""
        assert description.startswith("Building image · Step 2/9")

    def test_duplicate_message_is_dropped(self, clock: FakeClock) -> None:
        progress = _reporter(clock, context=None)
        progress.update_spinner("build", "same")
        clock.now += 61
        progress.update_spinner("build", "same")
        # elapsed suffix still reflects the first update
        assert progress.description("build") == "same (00:00)"


class TestLayers:
    def test_layer_bar_created_on_first_sight(self, clock: FakeClock) -> None:
        progress = _reporter(clock)
        assert not progress.has_task("sha256:abcdef0123456789")
        progress.update_layer("sha256:abcdef0123456789", 10, 100, "Downloading")
        assert progress.has_task("sha256:abcdef0123456789")
        assert progress.description("sha256:abcdef0123456789") == "sha256:abcde Downloading"

    def test_finish_all_and_close(self, clock: FakeClock) -> None:
        progress = _reporter(clock)
        progress.update_layer("layer1", 50, 100, "Downloading")
        progress.add_spinner("pull", "Pulling")
        progress.finish_all("done")
        assert "done" in (progress.description("layer1") or "")
        progress.close()
        progress.close()

    def test_unknown_task_description(self, clock: FakeClock) -> None:
        assert _reporter(clock).description("missing") is None
