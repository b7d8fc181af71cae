import logging

from mailmirror.domain.models import Category

logger = logging.getLogger(__name__)


def categorize(item):
    """Return the semantic categories an item belongs to.

    Pure function of flags, labels and priority; an item may hold several
    categories at once, or none.
    """
    labels = item.labels
    categories = set()

    if "INBOX" in labels and not item.is_trash and not item.is_archived:
        categories.add(Category.INBOX)
    if "SENT" in labels:
        categories.add(Category.SENT)
    if item.is_starred or "STARRED" in labels:
        categories.add(Category.STARRED)
    if item.is_trash or "TRASH" in labels:
        categories.add(Category.TRASH)
    if "INBOX" not in labels and "TRASH" not in labels and labels and labels != {"SENT"}:
        categories.add(Category.ARCHIVE)
    if not item.is_read or "UNREAD" in labels:
        categories.add(Category.UNREAD)
    if item.priority.is_important or "IMPORTANT" in labels:
        categories.add(Category.IMPORTANT)

    return frozenset(categories)


def build_category_map(items):
    category_map = {}
    uncategorized = 0
    for item in items:
        categories = categorize(item)
        if not categories:
            uncategorized += 1
        category_map[item.id] = categories
    if uncategorized:
        logger.debug("%d of %d items have no category", uncategorized, len(category_map))
    return category_map


def count_by_category(category_map):
    counts = {category: 0 for category in Category}
    for categories in category_map.values():
        for category in categories:
            counts[category] += 1
    return counts


__all__ = ["build_category_map", "categorize", "count_by_category"]
