"""Async services that own and synchronize per-account mail state."""

from . import enrichment, events, mail_sync, mailbox, mutations, provider, scheduler

__all__ = ["enrichment", "events", "mail_sync", "mailbox", "mutations", "provider", "scheduler"]
