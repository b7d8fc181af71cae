from datetime import datetime, timezone

from mailmirror.domain.categories import build_category_map, categorize, count_by_category
from mailmirror.domain.models import Category, MailItem, Priority


def _item(item_id="m1", **overrides):
    fields = {
        "id": item_id,
        "subject": "Hello",
        "timestamp": datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
        "is_read": True,
    }
    fields.update(overrides)
    return MailItem(**fields)


def test_unread_inbox_item_is_inbox_and_unread():
    item = _item(labels={"INBOX"}, is_read=False, priority=Priority.MEDIUM)

    assert categorize(item) == {Category.INBOX, Category.UNREAD}


def test_sent_only_item_is_only_sent():
    assert categorize(_item(labels={"SENT"})) == {Category.SENT}


def test_categorize_is_deterministic():
    item = _item(labels={"INBOX", "IMPORTANT"}, is_starred=True)

    assert categorize(item) == categorize(item)
    assert categorize(item) == {Category.INBOX, Category.IMPORTANT, Category.STARRED}


def test_trashed_item_leaves_inbox():
    item = _item(labels={"INBOX", "TRASH"}, is_trash=True)

    assert categorize(item) == {Category.TRASH}


def test_archived_inbox_flag_hides_inbox_but_label_rule_decides_archive():
    flagged = _item(labels={"INBOX"}, is_archived=True)
    moved = _item(labels={"ARCHIVED"}, is_archived=True)

    assert categorize(flagged) == frozenset()
    assert categorize(moved) == {Category.ARCHIVE}


def test_high_priority_counts_as_important():
    assert Category.IMPORTANT in categorize(_item(labels={"INBOX"}, priority=Priority.URGENT))
    assert Category.IMPORTANT not in categorize(_item(labels={"INBOX"}, priority=Priority.LOW))


def test_unlabeled_read_item_has_no_category():
    assert categorize(_item()) == frozenset()


def test_build_category_map_and_counts():
    items = [
        _item("a", labels={"INBOX"}, is_read=False),
        _item("b", labels={"SENT"}),
        _item("c"),
    ]

    category_map = build_category_map(items)
    counts = count_by_category(category_map)

    assert category_map["c"] == frozenset()
    assert counts[Category.INBOX] == 1
    assert counts[Category.UNREAD] == 1
    assert counts[Category.SENT] == 1
    assert counts[Category.TRASH] == 0
