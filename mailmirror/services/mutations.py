"""Optimistic user actions: apply locally first, confirm or roll back remotely."""

import logging
from dataclasses import dataclass
from enum import Enum

from mailmirror.domain.models import MailItem, SyncStatus, utcnow
from mailmirror.errors import AuthRequiredError, NotFoundError
from mailmirror.services.provider import classify_failure

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    MARK_READ = "mark_read"
    MARK_UNREAD = "mark_unread"
    STAR = "star"
    UNSTAR = "unstar"
    TRASH = "trash"
    UNTRASH = "untrash"
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"


class MutationState(str, Enum):
    IDLE = "idle"
    LOCAL_APPLIED = "local_applied"
    SYNCED = "synced"
    ROLLED_BACK = "rolled_back"
    LOCAL_ONLY = "local_only"


# kind -> (flag changes, labels added, labels removed)
TRANSITIONS = {
    MutationKind.MARK_READ: ({"is_read": True}, (), ("UNREAD",)),
    MutationKind.MARK_UNREAD: ({"is_read": False}, ("UNREAD",), ()),
    MutationKind.STAR: ({"is_starred": True}, ("STARRED",), ()),
    MutationKind.UNSTAR: ({"is_starred": False}, (), ("STARRED",)),
    MutationKind.TRASH: ({"is_trash": True}, ("TRASH",), ("INBOX",)),
    MutationKind.UNTRASH: ({"is_trash": False}, ("INBOX",), ("TRASH",)),
    MutationKind.ARCHIVE: ({"is_archived": True}, (), ("INBOX",)),
    MutationKind.UNARCHIVE: ({"is_archived": False}, ("INBOX",), ()),
}


@dataclass(frozen=True)
class MutationResult:
    kind: MutationKind
    state: MutationState
    original: MailItem | None = None
    applied: MailItem | None = None
    synced: MailItem | None = None
    rolled_back_to: MailItem | None = None
    remote_called: bool = False
    error: Exception | None = None


def apply_local(item, kind):
    """Pure optimistic transition for ``kind``: new flags and labels, version + 1, status local."""
    flags, added, removed = TRANSITIONS[MutationKind(kind)]
    labels = (set(item.labels) | set(added)) - set(removed)
    return item.evolve(
        labels=frozenset(labels),
        version=item.version + 1,
        last_modified=utcnow(),
        sync_status=SyncStatus.LOCAL,
        **flags,
    )


class MutationController:
    """Runs optimistic mutations against one account's mailbox."""

    def __init__(self, mailbox, provider, cache=None):
        self.mailbox = mailbox
        self.provider = provider
        self.cache = cache
        self.closed = False

    @property
    def in_flight(self):
        """Ids of items whose remote call has not resolved yet."""
        return frozenset(self.mailbox.in_flight)

    def close(self):
        """Stop writing to the cache; pending calls still settle the mailbox."""
        self.closed = True

    async def apply(self, item_id, kind):
        kind = MutationKind(kind)
        original = self.mailbox.get(item_id)
        if original is None:
            error = NotFoundError(f"No mail item {item_id!r} for {self.mailbox.account.email}.")
            logger.warning("Skipping %s: %s", kind.value, error)
            return MutationResult(kind, MutationState.IDLE, error=error)

        applied = apply_local(original, kind)
        self.mailbox.write_item(applied)

        if not original.message_id:
            logger.info("%s on %s stays local until the next full sync", kind.value, item_id)
            return MutationResult(kind, MutationState.LOCAL_ONLY, original, applied)

        error = None
        self.mailbox.begin_remote(item_id)
        try:
            ok = await self.provider.mutate(original.message_id, kind.value)
        except Exception as exc:
            ok = False
            error = classify_failure(exc)
        finally:
            self.mailbox.end_remote(item_id)

        if ok:
            return await self._confirm(kind, original, applied)
        return self._roll_back(kind, original, applied, error)

    async def _confirm(self, kind, original, applied):
        current = self.mailbox.get(applied.id) or applied
        synced = current.evolve(sync_status=SyncStatus.SYNCED)
        if not self.mailbox.compare_and_set(synced, applied.version):
            # A newer write owns the item now; it settles its own status.
            logger.debug("%s on %s confirmed after the item changed again", kind.value, applied.id)
            synced = None
        await self._persist()
        return MutationResult(kind, MutationState.SYNCED, original, applied, synced=synced, remote_called=True)

    def _roll_back(self, kind, original, applied, error):
        logger.warning("%s on %s failed remotely, rolling back: %s", kind.value, original.id, error or "rejected")
        if isinstance(error, AuthRequiredError):
            self.mailbox.request_reauth(str(error))
        if self.mailbox.compare_and_set(original, applied.version):
            return MutationResult(
                kind,
                MutationState.ROLLED_BACK,
                original,
                applied,
                rolled_back_to=original,
                remote_called=True,
                error=error,
            )
        current = self.mailbox.get(original.id)
        if current is not None:
            self.mailbox.write_item(current.evolve(sync_status=SyncStatus.FAILED))
        return MutationResult(kind, MutationState.ROLLED_BACK, original, applied, remote_called=True, error=error)

    async def _persist(self):
        if self.cache is None or self.closed:
            return
        await self.cache.replace(self.mailbox.account, self.mailbox.items)

    # Convenience wrappers

    async def mark_read(self, item_id):
        return await self.apply(item_id, MutationKind.MARK_READ)

    async def mark_unread(self, item_id):
        return await self.apply(item_id, MutationKind.MARK_UNREAD)

    async def toggle_read(self, item_id):
        item = self.mailbox.get(item_id)
        kind = MutationKind.MARK_UNREAD if item is not None and item.is_read else MutationKind.MARK_READ
        return await self.apply(item_id, kind)

    async def toggle_star(self, item_id):
        item = self.mailbox.get(item_id)
        kind = MutationKind.UNSTAR if item is not None and item.is_starred else MutationKind.STAR
        return await self.apply(item_id, kind)

    async def trash(self, item_id):
        return await self.apply(item_id, MutationKind.TRASH)

    async def restore(self, item_id):
        return await self.apply(item_id, MutationKind.UNTRASH)

    async def archive(self, item_id):
        return await self.apply(item_id, MutationKind.ARCHIVE)

    async def unarchive(self, item_id):
        return await self.apply(item_id, MutationKind.UNARCHIVE)


__all__ = ["MutationController", "MutationKind", "MutationResult", "MutationState", "apply_local"]
