from datetime import datetime, timedelta, timezone

from mailmirror.domain.merge import carry_local_state, merge_incremental, merge_sources, new_items
from mailmirror.domain.models import MailItem, Priority, SuggestedAction, SyncStatus

BASE = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _item(item_id, minutes=0, **overrides):
    fields = {"id": item_id, "timestamp": BASE + timedelta(minutes=minutes)}
    fields.update(overrides)
    return MailItem(**fields)


def test_merge_sources_prefers_larger_label_set_on_timestamp_tie():
    first = _item("1", labels={"INBOX", "UNREAD"})
    second = _item("1", labels={"INBOX", "UNREAD", "STARRED", "IMPORTANT", "CATEGORY_X"})

    merged = merge_sources([[first], [second]])

    assert merged == [second]


def test_merge_sources_prefers_later_timestamp():
    older = _item("1", labels={"INBOX", "UNREAD", "STARRED"})
    newer = _item("1", minutes=5, labels={"INBOX"})

    assert merge_sources([[newer], [older]]) == [newer]


def test_merge_sources_keeps_first_on_full_tie_and_sorts_newest_first():
    first = _item("1", subject="first", labels={"INBOX"})
    duplicate = _item("1", subject="second", labels={"SENT"})
    latest = _item("2", minutes=10)

    merged = merge_sources([[first], [duplicate, latest]])

    assert [item.id for item in merged] == ["2", "1"]
    assert merged[1].subject == "first"


def test_merge_incremental_keeps_existing_and_prefers_incoming():
    existing = [_item("a", subject="old", message_id="ma"), _item("b", minutes=1, message_id="mb")]
    incoming = [_item("a", subject="new", message_id="ma"), _item("c", minutes=2, message_id="mc")]

    merged = merge_incremental(existing, incoming)

    by_id = {item.id: item for item in merged}
    assert set(by_id) == {"a", "b", "c"}
    assert by_id["a"].subject == "new"
    assert [item.id for item in merged] == ["c", "b", "a"]


def test_merge_incremental_keys_on_message_id_when_present():
    existing = [_item("local-1", message_id="remote-1")]
    incoming = [_item("remote-1", message_id="remote-1", subject="fetched")]

    merged = merge_incremental(existing, incoming)

    assert len(merged) == 1
    assert merged[0].subject == "fetched"


def test_carry_local_state_keeps_pending_flags_and_version():
    pending = _item(
        "a",
        message_id="ma",
        is_starred=True,
        labels={"INBOX", "STARRED"},
        version=4,
        sync_status=SyncStatus.LOCAL,
    )
    fetched = _item("a", message_id="ma", labels={"INBOX"}, subject="updated")

    carried = carry_local_state(pending, fetched)

    assert carried.subject == "updated"
    assert carried.is_starred is True
    assert carried.labels == {"INBOX", "STARRED"}
    assert carried.version == 4
    assert carried.sync_status == SyncStatus.LOCAL


def test_carry_local_state_keeps_enrichment_and_bumps_version():
    enriched = _item(
        "a",
        priority=Priority.URGENT,
        requires_action=True,
        suggested_action=SuggestedAction.REPLY,
        enriched=True,
        version=3,
    )
    fetched = _item("a", is_read=True, version=1)

    carried = carry_local_state(enriched, fetched)

    assert carried.priority == Priority.URGENT
    assert carried.requires_action is True
    assert carried.suggested_action == SuggestedAction.REPLY
    assert carried.enriched is True
    assert carried.is_read is True
    assert carried.version == 4


def test_merge_incremental_keep_local_applies_carry():
    pending = _item("a", is_read=True, version=2, sync_status=SyncStatus.LOCAL)
    fetched = _item("a", is_read=False)

    merged = merge_incremental([pending], [fetched], keep_local=True)

    assert merged[0].is_read is True
    assert merged[0].version == 2


def test_local_item_without_pending_call_takes_remote_copy():
    stale = _item("a", is_read=True, labels={"INBOX"}, version=2, sync_status=SyncStatus.LOCAL)
    fetched = _item("a", is_read=False, labels={"INBOX", "UNREAD"})

    merged = merge_incremental([stale], [fetched], keep_local=True, in_flight=set())

    assert merged[0].is_read is False
    assert merged[0].labels == {"INBOX", "UNREAD"}
    assert merged[0].sync_status == SyncStatus.SYNCED
    assert merged[0].version == 3


def test_only_items_with_pending_calls_keep_local_state():
    pending = _item("a", is_read=True, version=2, sync_status=SyncStatus.LOCAL)
    stale = _item("b", 1, is_read=True, version=2, sync_status=SyncStatus.LOCAL)

    merged = merge_incremental(
        [pending, stale],
        [_item("a", is_read=False), _item("b", 1, is_read=False)],
        keep_local=True,
        in_flight={"a"},
    )

    by_id = {item.id: item for item in merged}
    assert by_id["a"].is_read is True
    assert by_id["a"].sync_status == SyncStatus.LOCAL
    assert by_id["b"].is_read is False
    assert by_id["b"].sync_status == SyncStatus.SYNCED


def test_new_items_skips_known_and_duplicate_keys():
    existing = [_item("a", message_id="ma")]
    incoming = [_item("a", message_id="ma"), _item("b"), _item("b")]

    assert [item.id for item in new_items(existing, incoming)] == ["b"]
