"""Client-side mail mirror: cache, categorize, filter and sync a remote mailbox."""

from . import constants, domain, errors, infra, paths, services

__all__ = [
    "constants",
    "domain",
    "errors",
    "infra",
    "paths",
    "services",
]
