"""
Unit tests for progress reporting (sealback/utils/progress.py).
"""

import io
import logging

import pytest
from rich.console import Console

from sealback.utils.progress import ProgressReporter, ThroughputTracker, aggregate_percent


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestThroughputTracker:

    def test_rate_limited_below_interval(self):
        """Test that samples closer than the interval are dropped."""
        clock = FakeClock()
        tracker = ThroughputTracker(1000, interval=0.5, clock=clock)

        clock.now = 0.2
        assert tracker.sample(100) is None

        clock.now = 0.5
        assert tracker.sample(200) == (20.0, 400.0)

    def test_sliding_window_average(self):
        """Test that speed is averaged over the last `window` readings."""
        clock = FakeClock()
        tracker = ThroughputTracker(10 ** 6, interval=1.0, window=2, clock=clock)

        clock.now = 1.0
        tracker.sample(100)  # 100 B/s
        clock.now = 2.0
        tracker.sample(400)  # 300 B/s
        clock.now = 3.0
        _, speed = tracker.sample(900)  # 500 B/s

        assert speed == pytest.approx(400.0)

    def test_percent_caps_at_100(self):
        tracker = ThroughputTracker(100)

        assert tracker.percent(150) == 100.0

    def test_percent_of_empty_input(self):
        assert ThroughputTracker(0).percent(0) == 100.0


class TestAggregatePercent:

    @pytest.mark.parametrize('index,total,pct,expected', [
        (1, 3, 0, 0.0),
        (1, 3, 50, 50 / 3),
        (2, 3, 50, 50.0),
        (3, 3, 100, 100.0),
    ])
    def test_aggregate(self, index, total, pct, expected):
        assert aggregate_percent(index, total, pct) == pytest.approx(expected)


class TestProgressReporter:

    def test_disabled_reporter_only_logs(self, caplog):
        """Test that a disabled reporter logs at debug level and renders nothing."""
        logger = logging.getLogger('sealback.tests.progress')
        reporter = ProgressReporter(logger=logger, enabled=False)

        with caplog.at_level(logging.DEBUG, logger='sealback.tests.progress'):
            reporter.report('pass 1', 42.0, 2048)

        assert 'pass 1:  42.0% speed=2.00 KB/s' in caplog.text
        assert reporter._progress is None

    def test_enabled_reporter_renders_and_closes(self):
        console = Console(file=io.StringIO(), force_terminal=True, width=80)
        reporter = ProgressReporter(console=console, enabled=True)

        reporter.report('upload s3', 10)
        reporter.report('upload s3', 60, 1024)
        reporter.finish('upload s3')
        reporter.close()

        assert reporter._tasks == {}
        assert reporter._progress is None

    def test_default_disabled_when_not_a_terminal(self):
        console = Console(file=io.StringIO())

        assert ProgressReporter(console=console).enabled is False
