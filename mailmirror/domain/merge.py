"""Combine mail item batches from several fetches into one consistent collection.

Every function here is pure and total: no item with a unique key is dropped and
nothing raises on well-formed items.
"""

from mailmirror.domain.models import SyncStatus


def item_key(item):
    return item.message_id or item.id


def _by_newest(items):
    return sorted(items, key=lambda item: item.timestamp, reverse=True)


def _prefer(candidate, current):
    if candidate.timestamp != current.timestamp:
        return candidate.timestamp > current.timestamp
    return len(candidate.labels) > len(current.labels)


def merge_sources(batches):
    """Merge per-category fetches (inbox, sent, starred...) into one source of truth.

    Items sharing an id keep the later timestamp; on a tie the copy with more
    labels wins, and on a full tie the first one seen.
    """
    merged = {}
    for batch in batches or []:
        for item in batch or []:
            current = merged.get(item.id)
            if current is None or _prefer(item, current):
                merged[item.id] = item
    return _by_newest(merged.values())


def carry_local_state(existing, incoming, in_flight=True):
    """Fold locally owned state of ``existing`` into a freshly fetched copy.

    A ``local`` copy whose remote call is still ``in_flight`` keeps its flags
    and labels until that call resolves. Any other local copy yields to the
    provider. Enrichment results survive a refetch of an item the provider
    returns unenriched.
    """
    changes = {"version": max(existing.version, incoming.version) + 1}
    if in_flight and existing.sync_status == SyncStatus.LOCAL:
        # The in-flight mutation resolves against this exact version.
        changes.update(
            version=existing.version,
            is_read=existing.is_read,
            is_starred=existing.is_starred,
            is_trash=existing.is_trash,
            is_archived=existing.is_archived,
            labels=existing.labels,
            sync_status=SyncStatus.LOCAL,
        )
    if existing.enriched and not incoming.enriched:
        changes.update(
            priority=existing.priority,
            requires_action=existing.requires_action,
            suggested_action=existing.suggested_action,
            enriched=True,
        )
    return incoming.evolve(**changes)


def merge_incremental(existing, incoming, keep_local=False, in_flight=None):
    """Fold newly fetched items into an existing collection.

    Keyed by ``message_id`` when present, else ``id``. Incoming copies replace
    existing ones on collision; with ``keep_local`` they first inherit local
    state through :func:`carry_local_state`. ``in_flight`` names the item ids
    with a remote mutation pending; when omitted every local item counts.
    """
    merged = {}
    for item in existing or []:
        merged[item_key(item)] = item
    for item in incoming or []:
        key = item_key(item)
        current = merged.get(key)
        if keep_local and current is not None:
            pending = in_flight is None or current.id in in_flight
            item = carry_local_state(current, item, in_flight=pending)
        merged[key] = item
    return _by_newest(merged.values())


def new_items(existing, incoming):
    """Items from ``incoming`` whose key is not present in ``existing``."""
    known = {item_key(item) for item in existing or []}
    fresh = []
    for item in incoming or []:
        key = item_key(item)
        if key in known:
            continue
        known.add(key)
        fresh.append(item)
    return fresh


__all__ = ["carry_local_state", "item_key", "merge_incremental", "merge_sources", "new_items"]
