"""Tests for the work-item tracker."""

import pytest

from chronicler.proxy.agent.work_items import WorkItemTracker


@pytest.fixture
def tracker():
    return WorkItemTracker()


# ═══════════════════════════════════════════════════════════════
# Adding and updating
# ═══════════════════════════════════════════════════════════════

class TestAddAndUpdate:
    """Ids are sequential per tracker; completed_at follows the completed state."""

    def test_ids_are_sequential(self, tracker):
        first = tracker.add("Find Aldric")
        second = tracker.add("Check his relationships")
        assert first.id == "wi_1"
        assert second.id == "wi_2"
        assert first.status == "pending"
        assert first.created_at is not None

    def test_new_tracker_restarts_numbering(self, tracker):
        tracker.add("one")
        assert WorkItemTracker().add("fresh").id == "wi_1"

    def test_update_unknown_returns_none(self, tracker):
        assert tracker.update("wi_99", "completed") is None

    def test_update_invalid_status_raises(self, tracker):
        item = tracker.add("Find Aldric")
        with pytest.raises(ValueError):
            tracker.update(item.id, "done")

    def test_complete_sets_timestamp_and_result(self, tracker):
        item = tracker.add("Find Aldric")
        updated = tracker.update(item.id, "completed", "Found in Greyhaven")
        assert updated.status == "completed"
        assert updated.result == "Found in Greyhaven"
        assert updated.completed_at is not None

    def test_reopening_clears_completed_at(self, tracker):
        item = tracker.add("Find Aldric")
        tracker.update(item.id, "completed")
        tracker.update(item.id, "in_progress")
        assert tracker.get(item.id).completed_at is None

    def test_result_kept_when_not_given(self, tracker):
        item = tracker.add("Find Aldric")
        tracker.update(item.id, "in_progress", "halfway")
        tracker.update(item.id, "completed")
        assert tracker.get(item.id).result == "halfway"


# ═══════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════

class TestQueries:

    def test_all_completed_false_when_empty(self, tracker):
        assert tracker.all_completed() is False

    def test_all_completed(self, tracker):
        a = tracker.add("a")
        b = tracker.add("b")
        tracker.update(a.id, "completed")
        assert tracker.all_completed() is False
        tracker.update(b.id, "completed")
        assert tracker.all_completed() is True

    def test_summary_counts(self, tracker):
        a = tracker.add("a")
        tracker.add("b")
        c = tracker.add("c")
        tracker.update(a.id, "completed")
        tracker.update(c.id, "in_progress")
        assert tracker.summary() == {"total": 3, "pending": 1, "completed": 1}
        assert [i.id for i in tracker.pending()] == ["wi_2"]
        assert [i.id for i in tracker.completed()] == ["wi_1"]

    def test_list_keeps_insertion_order(self, tracker):
        for name in ("a", "b", "c"):
            tracker.add(name)
        assert [i.description for i in tracker.list()] == ["a", "b", "c"]
        assert len(tracker) == 3

    def test_to_dict_serializes_dates(self, tracker):
        item = tracker.add("a")
        data = item.to_dict()
        assert isinstance(data["created_at"], str)
        assert data["completed_at"] is None


# ═══════════════════════════════════════════════════════════════
# Markdown rendering
# ═══════════════════════════════════════════════════════════════

class TestMarkdown:

    def test_empty(self, tracker):
        assert tracker.to_markdown() == "No work items."

    def test_status_boxes_and_result(self, tracker):
        a = tracker.add("Find Aldric")
        b = tracker.add("Map the guild")
        tracker.add("Write summary")
        tracker.update(a.id, "completed", "He is in Greyhaven")
        tracker.update(b.id, "in_progress")

        lines = tracker.to_markdown().split("\n")
        assert lines[0] == "[x] **wi_1**: Find Aldric"
        assert lines[1] == "    → He is in Greyhaven"
        assert lines[2] == "[~] **wi_2**: Map the guild"
        assert lines[3] == "[ ] **wi_3**: Write summary"
