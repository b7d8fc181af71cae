"""Value types shared by every layer of the sync engine."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum

from mailmirror.errors import DecodeError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4

    @property
    def is_important(self) -> bool:
        return self >= Priority.HIGH


class SyncStatus(str, Enum):
    LOCAL = "local"
    SYNCED = "synced"
    FAILED = "failed"


class SuggestedAction(str, Enum):
    REPLY = "reply"
    FORWARD = "forward"
    ARCHIVE = "archive"
    DELETE = "delete"
    MARK_READ = "mark_read"
    STAR = "star"


class Category(str, Enum):
    INBOX = "inbox"
    STARRED = "starred"
    SENT = "sent"
    TRASH = "trash"
    ARCHIVE = "archive"
    UNREAD = "unread"
    IMPORTANT = "important"


class SortOrder(str, Enum):
    PRIORITY = "priority"
    DATE = "date"


@dataclass(frozen=True)
class MailItem:
    """One message as mirrored locally, including its sync metadata."""

    id: str
    subject: str = ""
    sender: str = ""
    sender_address: str = ""
    recipients: tuple = ()
    content: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    is_read: bool = False
    is_starred: bool = False
    is_trash: bool = False
    is_archived: bool = False
    labels: frozenset = frozenset()
    priority: Priority = Priority.MEDIUM
    requires_action: bool = False
    suggested_action: SuggestedAction | None = None
    message_id: str | None = None
    thread_id: str | None = None
    has_attachments: bool = False
    version: int = 1
    last_modified: datetime = field(default_factory=utcnow)
    sync_status: SyncStatus = SyncStatus.SYNCED
    enriched: bool = False

    def __post_init__(self):
        # Accept any iterable for the collection fields but store immutable copies.
        if not isinstance(self.labels, frozenset):
            object.__setattr__(self, "labels", frozenset(self.labels or ()))
        if not isinstance(self.recipients, tuple):
            object.__setattr__(self, "recipients", tuple(self.recipients or ()))

    @property
    def key(self) -> str:
        """De-duplication key across fetches."""
        return self.message_id or self.id

    def evolve(self, **changes) -> "MailItem":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject": self.subject,
            "sender": self.sender,
            "senderAddress": self.sender_address,
            "recipients": list(self.recipients),
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "isRead": self.is_read,
            "isStarred": self.is_starred,
            "isTrash": self.is_trash,
            "isArchived": self.is_archived,
            "labels": sorted(self.labels),
            "priority": self.priority.name.lower(),
            "requiresAction": self.requires_action,
            "suggestedAction": self.suggested_action.value if self.suggested_action else None,
            "messageId": self.message_id,
            "threadId": self.thread_id,
            "hasAttachments": self.has_attachments,
            "version": self.version,
            "lastModified": self.last_modified.isoformat(),
            "syncStatus": self.sync_status.value,
            "enriched": self.enriched,
        }

    @classmethod
    def from_dict(cls, payload) -> "MailItem":
        if not isinstance(payload, dict):
            raise DecodeError("Mail item payload must be a JSON object.")
        try:
            item_id = payload["id"]
            if not isinstance(item_id, str) or not item_id:
                raise DecodeError("Mail item is missing its id.")
            suggested = payload.get("suggestedAction")
            return cls(
                id=item_id,
                subject=payload.get("subject") or "",
                sender=payload.get("sender") or "",
                sender_address=payload.get("senderAddress") or "",
                recipients=tuple(payload.get("recipients") or ()),
                content=payload.get("content") or "",
                timestamp=parse_timestamp(payload["timestamp"]),
                is_read=bool(payload.get("isRead")),
                is_starred=bool(payload.get("isStarred")),
                is_trash=bool(payload.get("isTrash")),
                is_archived=bool(payload.get("isArchived")),
                labels=frozenset(payload.get("labels") or ()),
                priority=Priority[str(payload.get("priority") or "medium").upper()],
                requires_action=bool(payload.get("requiresAction")),
                suggested_action=SuggestedAction(suggested) if suggested else None,
                message_id=payload.get("messageId"),
                thread_id=payload.get("threadId"),
                has_attachments=bool(payload.get("hasAttachments")),
                version=int(payload.get("version") or 1),
                last_modified=parse_timestamp(payload.get("lastModified") or payload["timestamp"]),
                sync_status=SyncStatus(payload.get("syncStatus") or SyncStatus.SYNCED.value),
                enriched=bool(payload.get("enriched")),
            )
        except DecodeError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed mail item payload: {exc}") from exc


@dataclass(frozen=True)
class Account:
    email: str
    provider: str = "outlook"
    display_name: str = ""
    is_active: bool = True
    last_sync: datetime | None = None
    profile_image_url: str | None = None

    @property
    def key(self) -> str:
        return self.email.strip().lower()

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "provider": self.provider,
            "displayName": self.display_name,
            "isActive": self.is_active,
            "lastSync": self.last_sync.isoformat() if self.last_sync else None,
            "profileImageUrl": self.profile_image_url,
        }

    @classmethod
    def from_dict(cls, payload) -> "Account":
        if not isinstance(payload, dict) or not payload.get("email"):
            raise DecodeError("Account payload must be an object with an email.")
        try:
            last_sync = payload.get("lastSync")
            return cls(
                email=str(payload["email"]),
                provider=payload.get("provider") or "outlook",
                display_name=payload.get("displayName") or "",
                is_active=bool(payload.get("isActive", True)),
                last_sync=parse_timestamp(last_sync) if last_sync else None,
                profile_image_url=payload.get("profileImageUrl"),
            )
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed account payload: {exc}") from exc


@dataclass(frozen=True)
class FilterSpec:
    """Active category tags, optional custom query and free-text search."""

    categories: frozenset = frozenset()
    query: str | None = None
    search_text: str = ""

    def __post_init__(self):
        if not isinstance(self.categories, frozenset):
            object.__setattr__(self, "categories", frozenset(self.categories or ()))

    @property
    def has_query(self) -> bool:
        return bool((self.query or "").strip())

    @property
    def is_default(self) -> bool:
        return not self.categories and not self.has_query and not self.search_text.strip()

    def cache_key(self) -> str:
        tags = ",".join(sorted(Category(tag).value for tag in self.categories))
        query = (self.query or "").strip().lower()
        search = self.search_text.strip().lower()
        return f"{tags}|{query}|{search}"


@dataclass(frozen=True)
class SavedFilter:
    title: str
    query: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {"title": self.title, "query": self.query, "createdAt": self.created_at.isoformat()}

    @classmethod
    def from_dict(cls, payload) -> "SavedFilter":
        if not isinstance(payload, dict) or not payload.get("query"):
            raise DecodeError("Saved filter payload must be an object with a query.")
        created = payload.get("createdAt")
        return cls(
            title=str(payload.get("title") or payload["query"]),
            query=str(payload["query"]),
            created_at=parse_timestamp(created) if created else utcnow(),
        )


def parse_timestamp(value) -> datetime:
    """Parse ISO-8601 text (including Graph's trailing ``Z``) into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("Missing timestamp.")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "Account",
    "Category",
    "FilterSpec",
    "MailItem",
    "Priority",
    "SavedFilter",
    "SortOrder",
    "SuggestedAction",
    "SyncStatus",
    "parse_timestamp",
    "utcnow",
]
