"""Per-account owner of the mirrored collection and everything derived from it."""

import asyncio
import logging
from collections import Counter

from mailmirror.constants import STATUS_MESSAGE_TTL_SEC
from mailmirror.domain.categories import build_category_map, count_by_category
from mailmirror.domain.filters import FilterEngine, sort_items
from mailmirror.domain.merge import merge_incremental
from mailmirror.domain.models import Category, FilterSpec, SortOrder

logger = logging.getLogger(__name__)


class Mailbox:
    """Single writer for one account's items, category map, filter memo and view.

    Write methods are synchronous and must run on the event loop; results of
    awaited I/O re-enter through them. Every write funnels through
    :meth:`_commit`, so readers of :attr:`visible` never see a collection whose
    categories or filter results are stale.
    """

    def __init__(self, account, sort_order=SortOrder.PRIORITY, status_ttl=STATUS_MESSAGE_TTL_SEC):
        self.account = account
        self.sort_order = SortOrder(sort_order)
        self.status_ttl = status_ttl
        self.filter_spec = FilterSpec()
        self.filters = FilterEngine()
        self.category_map = {}
        self.visible = ()
        self.is_loading = False
        self.status_message = None
        self.needs_reauth = False
        self.reauth_message = None
        self._items = ()
        self._index = {}
        self.in_flight = Counter()
        self._observers = []
        self._status_handle = None

    @property
    def items(self):
        return self._items

    def get(self, item_id):
        return self._index.get(item_id)

    def __len__(self):
        return len(self._items)

    def subscribe(self, observer):
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self):
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("Mailbox observer failed for %s", self.account.email)

    def _refresh_view(self):
        filtered = self.filters.apply(self._items, self.category_map, self.filter_spec)
        self.visible = sort_items(filtered, self.sort_order)

    def _commit(self, items):
        self._items = tuple(items)
        self._index = {item.id: item for item in self._items}
        self.category_map = build_category_map(self._items)
        self.filters.invalidate()
        self._refresh_view()
        self._notify()

    # Writes

    def replace_all(self, items):
        self._commit(items)

    def fold_in(self, items):
        """Merge fetched items, keeping changes whose remote call is pending. Returns the new collection."""
        self._commit(merge_incremental(self._items, items, keep_local=True, in_flight=self.in_flight))
        return self._items

    def write_item(self, item):
        if item.id not in self._index:
            return False
        self._commit(item if current.id == item.id else current for current in self._items)
        return True

    def compare_and_set(self, item, expected_version):
        """Write ``item`` only if the stored copy still carries ``expected_version``."""
        current = self._index.get(item.id)
        if current is None or current.version != expected_version:
            return False
        return self.write_item(item)

    def apply_enrichment(self, enriched):
        """Copy classification fields from ``enriched`` onto the stored items.

        Only ``priority``, ``requires_action``, ``suggested_action`` and
        ``enriched`` are taken; everything else stays as currently stored.
        Returns the number of items patched.
        """
        patches = {item.id: item for item in enriched if item.enriched}
        patched = 0
        items = []
        for current in self._items:
            source = patches.get(current.id)
            if source is None:
                items.append(current)
                continue
            # A pending mutation settles against the version it applied.
            version = current.version if current.id in self.in_flight else current.version + 1
            items.append(
                current.evolve(
                    priority=source.priority,
                    requires_action=source.requires_action,
                    suggested_action=source.suggested_action,
                    enriched=True,
                    version=version,
                )
            )
            patched += 1
        if patched:
            self._commit(items)
        return patched

    def begin_remote(self, item_id):
        self.in_flight[item_id] += 1

    def end_remote(self, item_id):
        self.in_flight[item_id] -= 1
        if self.in_flight[item_id] <= 0:
            del self.in_flight[item_id]

    # View state

    def set_filter(self, spec):
        self.filter_spec = spec
        self._refresh_view()
        self._notify()

    def toggle_category(self, category):
        category = Category(category)
        categories = set(self.filter_spec.categories)
        if category in categories:
            categories.remove(category)
        else:
            categories.add(category)
        self.set_filter(FilterSpec(frozenset(categories), self.filter_spec.query, self.filter_spec.search_text))

    def clear_filters(self):
        self.set_filter(FilterSpec())

    def set_search_text(self, text):
        self.set_filter(FilterSpec(self.filter_spec.categories, self.filter_spec.query, text or ""))

    def apply_query(self, query):
        self.set_filter(FilterSpec(self.filter_spec.categories, query, self.filter_spec.search_text))

    def clear_query(self):
        self.apply_query(None)

    def set_sort_order(self, order):
        self.sort_order = SortOrder(order)
        self._refresh_view()
        self._notify()

    def category_counts(self):
        return count_by_category(self.category_map)

    # Produced surface

    def set_loading(self, loading):
        self.is_loading = bool(loading)
        self._notify()

    def flash_status(self, message, ttl=None):
        """Show ``message`` and clear it after ``ttl`` seconds unless replaced meanwhile."""
        if self._status_handle is not None:
            self._status_handle.cancel()
            self._status_handle = None
        self.status_message = message
        self._notify()
        ttl = self.status_ttl if ttl is None else ttl
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._status_handle = loop.call_later(ttl, self._expire_status, message)

    def _expire_status(self, message):
        self._status_handle = None
        if self.status_message == message:
            self.status_message = None
            self._notify()

    def request_reauth(self, message):
        self.needs_reauth = True
        self.reauth_message = message
        self._notify()

    def clear_reauth(self):
        if self.needs_reauth:
            self.needs_reauth = False
            self.reauth_message = None
            self._notify()

    def close(self):
        if self._status_handle is not None:
            self._status_handle.cancel()
            self._status_handle = None
        self._observers.clear()


__all__ = ["Mailbox"]
