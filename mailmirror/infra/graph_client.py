import hashlib
import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

try:
    import msal
except ImportError:
    msal = None

try:
    import requests
except ImportError:
    requests = None

from mailmirror.constants import (
    AUTHORITY,
    CATEGORY_FOLDERS,
    DEFAULT_CLIENT_ID,
    FOLDER_LABELS,
    GRAPH_BASE,
    HTTP_CONNECT_TIMEOUT_SEC,
    HTTP_GET_RETRIES,
    HTTP_READ_TIMEOUT_SEC,
    MESSAGE_SELECT,
    RECENT_FETCH_HOURS,
    RECENT_FETCH_TOP,
    SCOPES,
    TOKEN_CACHE_ID_HASH_CHARS,
)
from mailmirror.domain.models import Category
from mailmirror.infra.mapping import from_graph_message
from mailmirror.paths import CONFIG_DIR, TOKEN_CACHE_FILE

logger = logging.getLogger(__name__)

# Categories fetched with a filter rather than a folder: (folder or None for all mail, $filter).
FILTERED_CATEGORIES = {
    Category.STARRED.value: (None, "flag/flagStatus eq 'flagged'"),
    Category.UNREAD.value: ("inbox", "isRead eq false"),
    Category.IMPORTANT.value: (None, "importance eq 'high'"),
}

# operation -> ("patch", body) or ("move", destination folder)
MUTATION_REQUESTS = {
    "mark_read": ("patch", {"isRead": True}),
    "mark_unread": ("patch", {"isRead": False}),
    "star": ("patch", {"flag": {"flagStatus": "flagged"}}),
    "unstar": ("patch", {"flag": {"flagStatus": "notFlagged"}}),
    "trash": ("move", "deleteditems"),
    "untrash": ("move", "inbox"),
    "archive": ("move", "archive"),
    "unarchive": ("move", "inbox"),
}


def token_cache_path_for_client_id(client_id):
    """Return a stable token cache path per client id."""
    cid = (client_id or DEFAULT_CLIENT_ID).strip()
    if cid == DEFAULT_CLIENT_ID:
        return TOKEN_CACHE_FILE
    digest = hashlib.sha1(cid.encode("utf-8")).hexdigest()[:TOKEN_CACHE_ID_HASH_CHARS]
    return os.path.join(CONFIG_DIR, f"token_cache_{digest}.json")


def _graph_datetime(value):
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GraphClient:
    """Microsoft Graph mail provider with MSAL silent token refresh.

    Sign-in happens elsewhere; this client only reuses accounts already present
    in the serialized token cache.
    """

    def __init__(
        self,
        client_id=None,
        request_timeout=(HTTP_CONNECT_TIMEOUT_SEC, HTTP_READ_TIMEOUT_SEC),
        get_retries=HTTP_GET_RETRIES,
        rate_limit_retries=3,
        max_retry_after_sec=30,
    ):
        if msal is None or requests is None:
            missing = []
            if msal is None:
                missing.append("msal")
            if requests is None:
                missing.append("requests")
            raise RuntimeError(
                f"Missing required dependencies for GraphClient: {', '.join(missing)}"
            )
        self.client_id = client_id or DEFAULT_CLIENT_ID
        self.access_token = None
        self.account_email = None
        self.request_timeout = request_timeout
        self.get_retries = max(0, int(get_retries or 0))
        self.rate_limit_retries = max(0, int(rate_limit_retries or 0))
        self.max_retry_after_sec = max(1, int(max_retry_after_sec or 1))
        self.token_cache_file = token_cache_path_for_client_id(self.client_id)
        self.token_cache = msal.SerializableTokenCache()
        if os.path.exists(self.token_cache_file):
            with open(self.token_cache_file, "r", encoding="utf-8") as f:
                self.token_cache.deserialize(f.read())
        self.app = msal.PublicClientApplication(
            self.client_id, authority=AUTHORITY, token_cache=self.token_cache
        )
        self.session = requests.Session()
        self._session_lock = threading.Lock()
        self._folder_labels_by_id = None

    def _save_cache(self):
        if self.token_cache.has_state_changed:
            os.makedirs(CONFIG_DIR, exist_ok=True)
            with open(self.token_cache_file, "w", encoding="utf-8") as f:
                f.write(self.token_cache.serialize())

    def _cached_accounts(self, email=None):
        if email:
            return self.app.get_accounts(username=email)
        return self.app.get_accounts()

    def use_account(self, email):
        """Point subsequent token refreshes at ``email`` and drop the current token."""
        if (email or None) != getattr(self, "account_email", None):
            self.account_email = email or None
            self.access_token = None
            self._folder_labels_by_id = None

    def has_session(self, email):
        return bool(self._cached_accounts(email))

    def refresh_if_needed(self):
        """Acquire a token silently. Returns False when the user must sign in again."""
        accounts = self._cached_accounts(getattr(self, "account_email", None))
        if not accounts:
            self.access_token = None
            return False
        result = self.app.acquire_token_silent(SCOPES, account=accounts[0])
        if result and "access_token" in result:
            self.access_token = result["access_token"]
            self._save_cache()
            return True
        if result:
            logger.info("Silent token refresh failed: %s", result.get("error_description") or result.get("error"))
        self.access_token = None
        return False

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Prefer": 'IdType="ImmutableId"',
        }

    @staticmethod
    def _retry_after_to_seconds(raw_value):
        text = str(raw_value or "").strip()
        if not text:
            return 1
        try:
            return max(0, int(text))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, OverflowError):
                return 1
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return max(0, int(parsed.timestamp() - time.time()))

    def _sleep_for_retry_after(self, response):
        headers = getattr(response, "headers", {}) or {}
        retry_after = headers.get("Retry-After") if hasattr(headers, "get") else None
        max_retry_after_sec = max(1, int(getattr(self, "max_retry_after_sec", 30) or 30))
        delay = min(max_retry_after_sec, self._retry_after_to_seconds(retry_after))
        time.sleep(delay)

    @staticmethod
    def _json_or_error(response, endpoint):
        try:
            payload = response.json()
        except ValueError as exc:
            raise RuntimeError(f"Invalid JSON response from Graph endpoint: {endpoint}") from exc
        if not isinstance(payload, dict):
            raise RuntimeError(f"Unexpected JSON shape from Graph endpoint: {endpoint}")
        return payload

    def _request(self, method, url, params=None, data=None):
        auth_retried = False
        transport_retries = self.get_retries if method.upper() == "GET" else 0
        rate_limit_retries = getattr(self, "rate_limit_retries", 3)
        rate_limit_attempt = 0
        attempt = 0

        while True:
            lock = getattr(self, "_session_lock", None)
            if lock is None:
                self._session_lock = lock = threading.Lock()
            try:
                with lock:
                    resp = self.session.request(
                        method,
                        url,
                        headers=self._headers(),
                        params=params,
                        json=data,
                        timeout=self.request_timeout,
                    )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError):
                if attempt >= transport_retries:
                    raise
                attempt += 1
                logger.debug("Retrying %s %s after transport error", method, url)
                continue

            if resp.status_code == 401 and not auth_retried and self.refresh_if_needed():
                auth_retried = True
                continue

            if resp.status_code == 429 and rate_limit_attempt < max(0, int(rate_limit_retries or 0)):
                rate_limit_attempt += 1
                self._sleep_for_retry_after(resp)
                continue

            resp.raise_for_status()
            return resp

    def _get(self, url, params=None):
        return self._json_or_error(self._request("GET", url, params=params), url)

    def _post(self, url, data):
        return self._request("POST", url, data=data)

    def _patch(self, url, data):
        return self._request("PATCH", url, data=data)

    def get_profile(self):
        return self._get(f"{GRAPH_BASE}/me")

    def folder_labels_by_id(self):
        """Map the mailbox's well-known folder ids to label names, resolved once per account."""
        cached = getattr(self, "_folder_labels_by_id", None)
        if cached is not None:
            return cached
        labels = {}
        for folder_name, label in FOLDER_LABELS.items():
            try:
                folder = self._get(f"{GRAPH_BASE}/me/mailFolders/{folder_name}", params={"$select": "id"})
            except requests.exceptions.HTTPError as exc:
                logger.debug("Well-known folder %s unavailable: %s", folder_name, exc)
                continue
            folder_id = folder.get("id")
            if folder_id:
                labels[folder_id] = label
        self._folder_labels_by_id = labels
        return labels

    def _list_messages(self, url, top, filter_str=None, ordered=True):
        params = {"$top": str(max(1, int(top))), "$select": MESSAGE_SELECT}
        if filter_str:
            params["$filter"] = filter_str
        if ordered:
            params["$orderby"] = "receivedDateTime desc"
        data = self._get(url, params=params)
        messages = data.get("value") or []
        if not isinstance(messages, list):
            raise RuntimeError("Malformed message list payload: expected list in 'value'.")
        return [msg for msg in messages if isinstance(msg, dict)]

    def _to_items(self, messages, folder_label=None):
        folder_ids = self.folder_labels_by_id() if folder_label is None else None
        return [from_graph_message(msg, folder_label, folder_ids) for msg in messages]

    def fetch_by_category(self, category, max_results):
        category = Category(category).value
        folder = CATEGORY_FOLDERS.get(category)
        if folder:
            messages = self._list_messages(f"{GRAPH_BASE}/me/mailFolders/{folder}/messages", max_results)
            return self._to_items(messages, FOLDER_LABELS[folder])

        folder, filter_str = FILTERED_CATEGORIES[category]
        if folder:
            url = f"{GRAPH_BASE}/me/mailFolders/{folder}/messages"
            messages = self._list_messages(url, max_results, filter_str)
            return self._to_items(messages, FOLDER_LABELS[folder])
        # Graph rejects $orderby on a property other than the filtered one here.
        messages = self._list_messages(f"{GRAPH_BASE}/me/messages", max_results, filter_str, ordered=False)
        return self._to_items(messages)

    def fetch_recent(self, since=None, hours_ago=None, top=RECENT_FETCH_TOP):
        """Inbox messages received at or after ``since`` (default: ``hours_ago`` hours back)."""
        if since is None:
            hours = RECENT_FETCH_HOURS if hours_ago is None else hours_ago
            since = datetime.now(timezone.utc) - timedelta(hours=hours)
        filter_str = f"receivedDateTime ge {_graph_datetime(since)}"
        messages = self._list_messages(f"{GRAPH_BASE}/me/mailFolders/inbox/messages", top, filter_str)
        return self._to_items(messages, FOLDER_LABELS["inbox"])

    def mutate(self, remote_id, operation):
        try:
            action, payload = MUTATION_REQUESTS[operation]
        except KeyError:
            raise ValueError(f"Unsupported mail operation: {operation}") from None
        url = f"{GRAPH_BASE}/me/messages/{remote_id}"
        if action == "patch":
            self._patch(url, payload)
        else:
            self._post(f"{url}/move", {"destinationId": payload})
        return True

    def close(self):
        session = getattr(self, "session", None)
        if session is not None:
            session.close()
            self.session = None


__all__ = ["GraphClient", "token_cache_path_for_client_id"]
