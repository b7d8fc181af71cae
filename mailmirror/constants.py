APP_NAME = "mailmirror"
GRAPH_BASE = "https://graph.microsoft.com/v1.0"
SCOPES = ["Mail.ReadWrite", "User.Read"]
DEFAULT_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
AUTHORITY = "https://login.microsoftonline.com/common"
HTTP_CONNECT_TIMEOUT_SEC = 10
HTTP_READ_TIMEOUT_SEC = 45
HTTP_GET_RETRIES = 1
TOKEN_CACHE_ID_HASH_CHARS = 12

QUICK_REFRESH_INTERVAL_SEC = 5.0
QUICK_REFRESH_COUNT = 3
STEADY_REFRESH_INTERVAL_SEC = 30.0
MIN_REFRESH_SPACING_SEC = 3.0
RECENT_FETCH_HOURS = 1
MANUAL_REFRESH_HOURS = 2
RECENT_FETCH_TOP = 50
ENRICHMENT_DELAY_SEC = 0.5
STATUS_MESSAGE_TTL_SEC = 2.0
FAILURE_MESSAGE_TTL_SEC = 3.0

CATEGORY_FETCH_LIMITS = {
    "inbox": 50,
    "sent": 30,
    "starred": 20,
    "trash": 20,
    "archive": 20,
}

# Graph well-known folder names per fetchable category.
CATEGORY_FOLDERS = {
    "inbox": "inbox",
    "sent": "sentitems",
    "trash": "deleteditems",
    "archive": "archive",
}

FOLDER_LABELS = {
    "inbox": "INBOX",
    "sentitems": "SENT",
    "deleteditems": "TRASH",
    "archive": "ARCHIVED",
}

MESSAGE_SELECT = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,receivedDateTime,"
    "isRead,hasAttachments,bodyPreview,importance,flag,parentFolderId"
)

ITEMS_KEY_PREFIX = "mail_items:"
ACCOUNTS_KEY = "accounts"
CURRENT_ACCOUNT_KEY = "current_account"
