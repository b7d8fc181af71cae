import pytest

from mailmirror.domain.models import SyncStatus
from mailmirror.infra.mapping import from_graph_message, strip_html


def _message(**overrides):
    msg = {
        "id": "AAMk-1",
        "conversationId": "conv-1",
        "subject": "Status",
        "from": {"emailAddress": {"name": "Ops Team", "address": "Ops@Acme.test"}},
        "toRecipients": [{"emailAddress": {"address": "Me@Example.test"}}],
        "ccRecipients": [{"emailAddress": {"address": "me@example.test"}}, {"emailAddress": {"address": "x@y.test"}}],
        "receivedDateTime": "2024-05-01T10:00:00Z",
        "isRead": False,
        "hasAttachments": True,
        "bodyPreview": "  All systems nominal ",
        "importance": "high",
        "flag": {"flagStatus": "flagged"},
    }
    msg.update(overrides)
    return msg


def test_from_graph_message_maps_fields_and_labels():
    item = from_graph_message(_message(), "INBOX")

    assert item.id == "AAMk-1"
    assert item.message_id == "AAMk-1"
    assert item.thread_id == "conv-1"
    assert item.sender == "Ops Team"
    assert item.sender_address == "ops@acme.test"
    assert item.recipients == ("me@example.test", "x@y.test")
    assert item.content == "All systems nominal"
    assert item.labels == {"INBOX", "UNREAD", "STARRED", "IMPORTANT"}
    assert item.is_starred is True
    assert item.has_attachments is True
    assert item.sync_status == SyncStatus.SYNCED
    assert item.version == 1


def test_from_graph_message_resolves_parent_folder_label():
    item = from_graph_message(
        _message(isRead=True, flag=None, importance="normal", parentFolderId="f-archive"),
        folder_labels_by_id={"f-archive": "ARCHIVED"},
    )

    assert item.labels == {"ARCHIVED"}
    assert item.is_archived is True


def test_from_graph_message_prefers_html_body_as_text():
    body = {"contentType": "html", "content": "<p>Hello&nbsp;<b>world</b></p><script>x()</script>"}

    item = from_graph_message(_message(body=body), "INBOX")

    assert item.content == "Hello\xa0world"


def test_from_graph_message_requires_id():
    with pytest.raises(RuntimeError):
        from_graph_message({"subject": "no id"})


def test_strip_html_handles_empty():
    assert strip_html("") == ""
    assert strip_html("a<br>b") == "a\nb"
