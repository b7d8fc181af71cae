"""Async boundary over the blocking Graph client.

Every call runs in a worker thread and every failure leaves this module as a
``MailError`` subclass.
"""

import asyncio

import requests

from mailmirror.errors import AuthRequiredError, MailError, NotFoundError, TransientNetworkError

AUTH_STATUS_CODES = {401, 403}


def _status_code(exc):
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def classify_failure(exc):
    """Map a raw provider exception onto the mail error taxonomy."""
    if isinstance(exc, MailError):
        return exc
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return TransientNetworkError(f"Mail provider unreachable: {exc}")
    if isinstance(exc, requests.exceptions.HTTPError):
        status = _status_code(exc)
        if status in AUTH_STATUS_CODES:
            return AuthRequiredError(f"Mail provider rejected the session (HTTP {status}).")
        if status == 404:
            return NotFoundError("Message no longer exists on the mail provider.")
        return TransientNetworkError(f"Mail provider request failed: {exc}")
    if isinstance(exc, (requests.exceptions.RequestException, OSError)):
        return TransientNetworkError(f"Mail provider request failed: {exc}")
    return MailError(f"Mail provider call failed: {exc}")


async def _in_thread(func, *args, **kwargs):
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except Exception as exc:
        raise classify_failure(exc) from exc


class AsyncMailProvider:
    """Awaitable fetch/mutate surface for a blocking mail client."""

    def __init__(self, client):
        self.client = client

    async def fetch_by_category(self, category, max_results):
        return await _in_thread(self.client.fetch_by_category, category, max_results)

    async def fetch_recent(self, since=None, hours_ago=None):
        return await _in_thread(self.client.fetch_recent, since=since, hours_ago=hours_ago)

    async def mutate(self, remote_id, operation):
        return bool(await _in_thread(self.client.mutate, remote_id, operation))


class AsyncSession:
    """Session checks for the account the client currently serves."""

    def __init__(self, client):
        self.client = client

    def use_account(self, email):
        self.client.use_account(email)

    async def has_session(self, email):
        return bool(await _in_thread(self.client.has_session, email))

    async def refresh_if_needed(self):
        return bool(await _in_thread(self.client.refresh_if_needed))


__all__ = ["AsyncMailProvider", "AsyncSession", "classify_failure"]
