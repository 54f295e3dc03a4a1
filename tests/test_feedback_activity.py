"""Tests for the activity feed and progress tracker."""

from __future__ import annotations

import logging

import pytest

from kalai.feedback.activity import ActivityFeed, FeedbackAction, FeedbackItem, FeedbackType, ProgressTracker
from kalai.feedback.diagnostics import Severity
from tests.helpers import RecordingSurface


def _item(item_id: str, timestamp: int, **kwargs) -> FeedbackItem:
    return FeedbackItem.create(FeedbackType.INFO, "title", "message", id=item_id, timestamp=timestamp, **kwargs)


class TestFeedbackItem:
    def test_create_assigns_id_and_coerces_type(self) -> None:
        item = FeedbackItem.create("warning", "Heads up", "Something happened")
        assert item.type is FeedbackType.WARNING
        assert item.id.startswith("feedback-")
        assert item.dismissible

    def test_to_dict(self) -> None:
        item = FeedbackItem.create(
            FeedbackType.SUGGESTION,
            "Fix",
            "Apply quick fix",
            id="f1",
            severity=Severity.WARNING,
            file="a.py",
            line=2,
            actions=(FeedbackAction(label="Apply", command="kalai.fix", arguments=("a.py", 2)),),
        )
        payload = item.to_dict()
        assert payload["type"] == "suggestion"
        assert payload["severity"] == "warning"
        assert payload["actions"] == [{"label": "Apply", "command": "kalai.fix", "arguments": ["a.py", 2]}]


class TestActivityFeed:
    """The feed keeps the newest items, capped at its capacity."""

    def test_items_are_newest_first(self) -> None:
        feed = ActivityFeed()
        feed.add(_item("a", 1))
        feed.add(_item("b", 3))
        feed.add(_item("c", 2))

        assert [item.id for item in feed.items()] == ["b", "c", "a"]

    def test_equal_timestamps_order_by_insertion(self) -> None:
        feed = ActivityFeed()
        feed.add(_item("a", 5))
        feed.add(_item("b", 5))

        assert [item.id for item in feed.items()] == ["b", "a"]

    def test_capacity_evicts_oldest(self) -> None:
        surface = RecordingSurface()
        feed = ActivityFeed(surface, capacity=10)
        for index in range(12):
            feed.add(_item(f"i{index}", index))

        assert len(feed) == 10
        assert [item.id for item in feed.items()][-1] == "i2"
        assert surface.removed_feedback == ["i0", "i1"]
        assert "i0" not in surface.feedback

    def test_item_older_than_everything_in_full_feed_is_not_retained(self) -> None:
        surface = RecordingSurface()
        feed = ActivityFeed(surface, capacity=2)
        feed.add(_item("a", 10))
        feed.add(_item("b", 11))

        assert feed.add(_item("old", 1)) is False
        assert feed.get("old") is None
        assert "old" not in surface.feedback

    def test_same_id_replaces_item(self) -> None:
        feed = ActivityFeed()
        feed.add(_item("a", 1))
        feed.add(FeedbackItem.create(FeedbackType.ERROR, "title", "updated", id="a", timestamp=2))

        assert len(feed) == 1
        assert feed.get("a").message == "updated"

    def test_dismiss(self) -> None:
        surface = RecordingSurface()
        feed = ActivityFeed(surface)
        feed.add(_item("a", 1))

        assert feed.dismiss("a")
        assert feed.dismiss("a") is False
        assert surface.removed_feedback == ["a"]

    def test_non_dismissible_item_stays(self) -> None:
        feed = ActivityFeed()
        feed.add(_item("pinned", 1, dismissible=False))

        assert feed.dismiss("pinned") is False
        assert feed.get("pinned") is not None

    def test_clear_removes_everything(self) -> None:
        surface = RecordingSurface()
        feed = ActivityFeed(surface)
        feed.add(_item("a", 1))
        feed.add(_item("b", 2, dismissible=False))

        assert feed.clear() == 2
        assert feed.items() == ()
        assert surface.feedback == {}

    def test_capacity_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ActivityFeed(capacity=0)


class TestProgressTracker:
    """Progress is monotonic and cancellation runs the task's callback."""

    def test_start_and_complete(self) -> None:
        surface = RecordingSurface()
        tracker = ProgressTracker(surface)
        task = tracker.start("Indexing", task_id="t1")

        assert "t1" in tracker
        assert surface.progress["t1"] == task
        assert tracker.complete("t1")
        assert tracker.complete("t1") is False
        assert surface.removed_progress == ["t1"]

    def test_duplicate_id_is_rejected(self) -> None:
        tracker = ProgressTracker()
        tracker.start("One", task_id="t1")
        with pytest.raises(ValueError):
            tracker.start("Two", task_id="t1")

    def test_progress_never_moves_backwards(self) -> None:
        tracker = ProgressTracker()
        tracker.start("Work", task_id="t1")
        tracker.update("t1", 40)
        tracker.update("t1", 20, "still going")

        task = tracker.get("t1")
        assert task.progress == 40
        assert task.message == "still going"

    def test_progress_is_clamped(self) -> None:
        tracker = ProgressTracker()
        tracker.start("Work", task_id="t1")
        tracker.update("t1", 250)
        assert tracker.get("t1").progress == 100
        assert tracker.update("missing", 10) is None

    def test_unchanged_update_does_not_notify(self) -> None:
        surface = RecordingSurface()
        tracker = ProgressTracker(surface)
        tracker.start("Work", task_id="t1")
        tracker.update("t1", 10)
        tracker.update("t1", 5)

        assert [task.progress for task in surface.progress_history] == [0, 10]

    def test_cancel_runs_callback_and_removes_task(self) -> None:
        calls: list[str] = []
        tracker = ProgressTracker()
        tracker.start("Work", task_id="t1", cancellable=True, on_cancel=lambda: calls.append("cancelled"))

        assert tracker.cancel("t1")
        assert calls == ["cancelled"]
        assert "t1" not in tracker

    def test_non_cancellable_task_is_kept(self) -> None:
        tracker = ProgressTracker()
        tracker.start("Work", task_id="t1")

        assert tracker.cancel("t1") is False
        assert "t1" in tracker
        assert tracker.cancel("missing") is False

    def test_failing_cancel_callback_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        def _boom() -> None:
            raise RuntimeError("boom")

        tracker = ProgressTracker()
        tracker.start("Work", task_id="t1", cancellable=True, on_cancel=_boom)

        with caplog.at_level(logging.ERROR):
            assert tracker.cancel("t1")

        assert "t1" not in tracker
        assert "Cancel callback" in caplog.text
