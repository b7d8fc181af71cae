import asyncio
import inspect
import logging

from mailmirror.constants import ENRICHMENT_DELAY_SEC
from mailmirror.domain.models import Priority, SuggestedAction

logger = logging.getLogger(__name__)


def needs_enrichment(items, force=False):
    return [item for item in items if force or not item.enriched]


async def _classify(classifier, item):
    classify = getattr(classifier, "classify", classifier)
    if inspect.iscoroutinefunction(classify):
        return await classify(item)
    result = await asyncio.to_thread(classify, item)
    if inspect.isawaitable(result):
        result = await result
    return result


def _enriched_copy(item, result):
    priority, requires_action, suggested_action = result
    return item.evolve(
        priority=Priority(priority),
        requires_action=bool(requires_action),
        suggested_action=SuggestedAction(suggested_action) if suggested_action else None,
        enriched=True,
        version=item.version + 1,
    )


async def _pause(delay, cancel_event):
    if delay <= 0:
        return
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def enrich_items(items, classifier, cancel_event=None, delay=ENRICHMENT_DELAY_SEC):
    """Classify items one at a time, pacing calls by ``delay`` seconds.

    Stops as soon as ``cancel_event`` is set and returns what was processed so
    far. An item whose classification fails is returned unchanged.
    """
    items = list(items)
    processed = []
    for index, item in enumerate(items):
        if index:
            await _pause(delay, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Enrichment cancelled after %d of %d items", len(processed), len(items))
            break
        try:
            result = await _classify(classifier, item)
            processed.append(_enriched_copy(item, result))
        except Exception as exc:
            logger.warning("Enrichment failed for %s: %s", item.id, exc)
            processed.append(item)
    return processed


__all__ = ["enrich_items", "needs_enrichment"]
