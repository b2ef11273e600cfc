import pytest

from pogtrack.accuracy import AccuracyConfig, AccuracyTester, ErrorHistory, ErrorStats


def test_error_stats():
    stats = ErrorStats.from_errors([1.0, 2.0, 3.0, 10.0])
    assert stats.count == 4
    assert stats.mean == pytest.approx(4.0)
    assert stats.median == pytest.approx(2.5)
    assert (stats.min, stats.max) == (1.0, 10.0)
    assert ErrorStats.from_errors([]) is None


def test_tester_waits_for_settle_time():
    tester = AccuracyTester(AccuracyConfig(settle_time=5.0))
    tester.start(0.0, (1000, 500))

    assert tester.current_target == (0.1, 0.1)
    assert tester.tick(4.9, (100.0, 50.0)) is None
    assert tester.records == []

    tester.tick(5.0, (103.0, 54.0))
    assert tester.records[0].error == pytest.approx(5.0)
    assert tester.current_target == (0.5, 0.1)


def test_missing_pog_delays_the_point():
    tester = AccuracyTester(AccuracyConfig(settle_time=1.0))
    tester.start(0.0, (100, 100))
    tester.tick(2.0, None)
    assert tester.records == []
    tester.tick(2.1, (10.0, 10.0))
    assert len(tester.records) == 1


def test_full_run_summary():
    tester = AccuracyTester(AccuracyConfig(settle_time=1.0))
    tester.start(0.0, (300, 400))
    now = 0.0
    summary = None
    for u, v in list(tester.points):
        now += 1.0
        summary = tester.tick(now, (u * 300 + 3.0, v * 400 + 4.0))

    assert summary is not None
    assert not tester.active
    assert tester.current_target is None
    assert summary.stats.count == 9
    assert summary.stats.mean == pytest.approx(5.0)
    assert summary.diagonal_pct == pytest.approx(1.0)
    assert tester.tick(now + 5.0, (0.0, 0.0)) is None


def test_cancel_stops_the_test():
    tester = AccuracyTester()
    tester.start(0.0, (100, 100))
    tester.cancel()
    assert tester.current_target is None
    assert tester.tick(100.0, (0.0, 0.0)) is None


def test_history_is_bounded():
    history = ErrorHistory(AccuracyConfig(history_size=5))
    for i in range(12):
        history.add((0.0, 0.0), (float(i), 0.0), 0.0, 0.0)
    assert len(history) == 5
    report = history.report((100, 100))
    assert report.overall.min == 7.0
    assert report.overall.max == 11.0


def test_history_breakdown():
    history = ErrorHistory(AccuracyConfig(head_turn_threshold=5.0))
    assert history.report((200, 100)) is None

    assert history.add((10.0, 10.0), (13.0, 14.0), 0.0, 0.0) == pytest.approx(5.0)
    history.add((150.0, 80.0), (150.0, 60.0), 12.0, 0.0)
    history.add((150.0, 20.0), (150.0, 30.0), 0.0, -6.0)

    report = history.report((200, 100))
    assert report.overall.count == 3
    assert report.pct_of_min_side == pytest.approx(100.0 * (35.0 / 3.0) / 100.0)
    assert report.regions["left"].count == 1
    assert report.regions["right"].count == 2
    assert report.regions["top"].count == 2
    assert report.regions["bottom"].mean == pytest.approx(20.0)
    assert report.head["straight"].count == 1
    assert report.head["turned"].count == 2

    history.clear()
    assert len(history) == 0
