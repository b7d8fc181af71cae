"""Translate Microsoft Graph message payloads into MailItems."""

import html
import re

from mailmirror.domain.models import MailItem, SyncStatus, parse_timestamp, utcnow


def strip_html(text):
    """Reduce an HTML body to plain text for local search."""
    if not text:
        return ""
    text = re.sub(r"<style[^>]*>.*?</style>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<script[^>]*>.*?</script>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<head[^>]*>.*?</head>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</?(p|div|tr|li)[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def _email_address(entry):
    if not isinstance(entry, dict):
        return {}
    address = entry.get("emailAddress")
    return address if isinstance(address, dict) else {}


def _recipient_addresses(msg):
    addresses = []
    for role in ("toRecipients", "ccRecipients"):
        for entry in msg.get(role) or []:
            address = (_email_address(entry).get("address") or "").strip().lower()
            if address and address not in addresses:
                addresses.append(address)
    return tuple(addresses)


def _message_content(msg):
    body = msg.get("body")
    if isinstance(body, dict) and body.get("content"):
        content = body.get("content") or ""
        if str(body.get("contentType") or "").lower() == "html":
            return strip_html(content)
        return content.strip()
    return (msg.get("bodyPreview") or "").strip()


def message_labels(msg, folder_label=None, folder_labels_by_id=None):
    labels = set()
    if folder_label:
        labels.add(folder_label)
    parent_id = msg.get("parentFolderId")
    if parent_id and folder_labels_by_id and parent_id in folder_labels_by_id:
        labels.add(folder_labels_by_id[parent_id])
    if not msg.get("isRead"):
        labels.add("UNREAD")
    flag = msg.get("flag") or {}
    if isinstance(flag, dict) and flag.get("flagStatus") == "flagged":
        labels.add("STARRED")
    if str(msg.get("importance") or "").lower() == "high":
        labels.add("IMPORTANT")
    return frozenset(labels)


def from_graph_message(msg, folder_label=None, folder_labels_by_id=None):
    """Build a synced MailItem from one Graph message dict."""
    if not isinstance(msg, dict) or not msg.get("id"):
        raise RuntimeError("Malformed Graph message: missing id.")
    sender = _email_address(msg.get("from") or msg.get("sender"))
    labels = message_labels(msg, folder_label, folder_labels_by_id)
    received = msg.get("receivedDateTime") or msg.get("sentDateTime")
    timestamp = parse_timestamp(received) if received else utcnow()
    modified = msg.get("lastModifiedDateTime")
    return MailItem(
        id=msg["id"],
        subject=msg.get("subject") or "(No Subject)",
        sender=(sender.get("name") or sender.get("address") or "").strip(),
        sender_address=(sender.get("address") or "").strip().lower(),
        recipients=_recipient_addresses(msg),
        content=_message_content(msg),
        timestamp=timestamp,
        is_read=bool(msg.get("isRead")),
        is_starred="STARRED" in labels,
        is_trash="TRASH" in labels,
        is_archived="ARCHIVED" in labels,
        labels=labels,
        message_id=msg["id"],
        thread_id=msg.get("conversationId"),
        has_attachments=bool(msg.get("hasAttachments")),
        version=1,
        last_modified=parse_timestamp(modified) if modified else timestamp,
        sync_status=SyncStatus.SYNCED,
    )


__all__ = ["from_graph_message", "message_labels", "strip_html"]
