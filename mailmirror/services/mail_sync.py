import asyncio
import json
import logging
from dataclasses import replace

from mailmirror.constants import (
    ACCOUNTS_KEY,
    CATEGORY_FETCH_LIMITS,
    CURRENT_ACCOUNT_KEY,
    ENRICHMENT_DELAY_SEC,
    FAILURE_MESSAGE_TTL_SEC,
    MANUAL_REFRESH_HOURS,
    RECENT_FETCH_HOURS,
    STATUS_MESSAGE_TTL_SEC,
)
from mailmirror.domain.merge import item_key, merge_sources, new_items
from mailmirror.domain.models import Account, Category, SavedFilter, SortOrder, utcnow
from mailmirror.errors import AuthRequiredError, DecodeError, MailError, ValidationError
from mailmirror.infra.config_store import RefreshSettings
from mailmirror.services.enrichment import enrich_items, needs_enrichment
from mailmirror.services.events import LifecycleEvent
from mailmirror.services.mailbox import Mailbox
from mailmirror.services.mutations import MutationController
from mailmirror.services.scheduler import RefreshScheduler, SchedulerState

logger = logging.getLogger(__name__)

FULL_REFRESH_CATEGORIES = (
    Category.INBOX,
    Category.SENT,
    Category.STARRED,
    Category.TRASH,
    Category.ARCHIVE,
)

REAUTH_MESSAGE = "Session expired. Sign in again to keep this account in sync."


class AccountRegistry:
    """Known accounts and the current selection, persisted as JSON in durable storage."""

    def __init__(self, store):
        self.store = store
        self.accounts = []
        self.current_email = None

    def get(self, email):
        key = (email or "").strip().lower()
        for account in self.accounts:
            if account.key == key:
                return account
        return None

    @property
    def current(self):
        return self.get(self.current_email) if self.current_email else None

    def add(self, account):
        if self.get(account.email) is not None:
            return False
        self.accounts.append(account)
        return True

    def remove(self, email):
        account = self.get(email)
        if account is None:
            return None
        self.accounts.remove(account)
        if self.current_email and account.key == self.current_email.strip().lower():
            self.current_email = None
        return account

    def update(self, account):
        for index, existing in enumerate(self.accounts):
            if existing.key == account.key:
                self.accounts[index] = account
                return True
        return False

    def _read(self):
        raw_accounts = self.store.get(ACCOUNTS_KEY)
        raw_current = self.store.get(CURRENT_ACCOUNT_KEY)
        accounts = []
        if raw_accounts is not None:
            try:
                payload = json.loads(raw_accounts.decode("utf-8"))
                if not isinstance(payload, list):
                    raise DecodeError("Account list must be a JSON list.")
                accounts = [Account.from_dict(entry) for entry in payload]
            except (UnicodeDecodeError, ValueError, DecodeError) as exc:
                logger.warning("Ignoring unreadable account list: %s", exc)
                accounts = []
        current = raw_current.decode("utf-8", errors="replace").strip() if raw_current else None
        return accounts, current or None

    def _write(self, accounts, current):
        payload = json.dumps([account.to_dict() for account in accounts]).encode("utf-8")
        self.store.set(ACCOUNTS_KEY, payload)
        if current:
            self.store.set(CURRENT_ACCOUNT_KEY, current.encode("utf-8"))
        else:
            self.store.remove(CURRENT_ACCOUNT_KEY)

    async def load(self):
        accounts, current = await asyncio.to_thread(self._read)
        self.accounts = accounts
        self.current_email = current if current and self.get(current) is not None else None
        if self.current_email is None and self.accounts:
            self.current_email = self.accounts[0].email
        return self.accounts

    async def save(self):
        try:
            await asyncio.to_thread(self._write, list(self.accounts), self.current_email)
        except Exception as exc:
            logger.warning("Unable to persist account list: %s", exc)
            return False
        return True


class MailSyncService:
    """Coordinates accounts, refreshes, enrichment, mutations and lifecycle for the mirror."""

    def __init__(
        self,
        provider,
        session,
        cache,
        registry,
        config,
        classifier=None,
        events=None,
        settings=None,
    ):
        self.provider = provider
        self.session = session
        self.cache = cache
        self.registry = registry
        self.config = config
        self.classifier = classifier
        self.settings = settings or RefreshSettings.from_config(config)
        self._mailboxes = {}
        self._controllers = {}
        self._schedulers = {}
        self._enrichment_cancel = {}
        self._tasks = set()
        self._account_tasks = {}
        self._unsubscribe = events.subscribe(self.handle_event) if events is not None else None

    # Accessors

    @property
    def current_account(self):
        return self.registry.current

    @property
    def mailbox(self):
        account = self.current_account
        return self.mailbox_for(account) if account is not None else None

    def _sort_order(self):
        try:
            return SortOrder(self.config.get("sort_order", SortOrder.PRIORITY.value))
        except ValueError:
            return SortOrder.PRIORITY

    def mailbox_for(self, account):
        mailbox = self._mailboxes.get(account.key)
        if mailbox is None:
            ttl = self.config.get("status_message_ttl_sec", STATUS_MESSAGE_TTL_SEC)
            mailbox = Mailbox(account, sort_order=self._sort_order(), status_ttl=ttl)
            self._mailboxes[account.key] = mailbox
            self._controllers[account.key] = MutationController(mailbox, self.provider, self.cache)
        return mailbox

    def mutations_for(self, account):
        self.mailbox_for(account)
        return self._controllers[account.key]

    def scheduler_for(self, account):
        scheduler = self._schedulers.get(account.key)
        if scheduler is None:
            scheduler = RefreshScheduler(
                lambda: self._scheduled_tick(account.key),
                settings=self.settings,
                name=account.email,
            )
            self._schedulers[account.key] = scheduler
        return scheduler

    def _require_current(self):
        account = self.current_account
        if account is None:
            raise ValidationError("No account is selected.")
        return account

    def _spawn(self, coro, account=None):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if account is not None:
            owned = self._account_tasks.setdefault(account.key, set())
            owned.add(task)
            task.add_done_callback(owned.discard)
        return task

    def _owns(self, account, mailbox):
        """False once ``account`` was removed or its mailbox replaced while a call was awaited."""
        return self._mailboxes.get(account.key) is mailbox

    async def _cancel_account_tasks(self, account):
        owned = self._account_tasks.pop(account.key, set())
        current = asyncio.current_task()
        pending = [task for task in owned if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # Lifecycle

    async def open(self):
        """Load persisted accounts and bring up the current one."""
        await self.registry.load()
        account = self.current_account
        if account is not None:
            await self.switch_account(account.email)
        return account

    async def close(self):
        for scheduler in self._schedulers.values():
            scheduler.stop()
        for cancel_event in self._enrichment_cancel.values():
            cancel_event.set()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_event(self, event, account=None):
        account_ref = account.email if isinstance(account, Account) else account
        current = self.current_account
        if current is None:
            return
        scheduler = self._schedulers.get(current.key)
        if event in (LifecycleEvent.ACTIVE, LifecycleEvent.FOREGROUND):
            if scheduler is not None:
                scheduler.resume()
                if event == LifecycleEvent.FOREGROUND and scheduler.state != SchedulerState.STOPPED:
                    scheduler.tick_now()
        elif event in (LifecycleEvent.INACTIVE, LifecycleEvent.BACKGROUND):
            if scheduler is not None:
                scheduler.pause()
        elif event == LifecycleEvent.EXTERNAL_UPDATE:
            if account_ref is None or account_ref.strip().lower() == current.key:
                self._spawn(self.refresh_incremental(), account=current)

    # Accounts

    async def add_account(self, account, make_current=True):
        if not self.registry.add(account):
            logger.debug("Account %s already registered", account.email)
            return False
        logger.info("Added account %s", account.email)
        if make_current or self.current_account is None:
            await self.switch_account(account.email)
        else:
            await self.registry.save()
        return True

    async def remove_account(self, email):
        account = self.registry.get(email)
        if account is None:
            return False
        was_current = self.current_account is not None and self.current_account.key == account.key

        scheduler = self._schedulers.pop(account.key, None)
        if scheduler is not None:
            scheduler.stop()
        cancel_event = self._enrichment_cancel.pop(account.key, None)
        if cancel_event is not None:
            cancel_event.set()
        controller = self._controllers.pop(account.key, None)
        if controller is not None:
            controller.close()
        mailbox = self._mailboxes.pop(account.key, None)
        if mailbox is not None:
            mailbox.close()
        await self._cancel_account_tasks(account)
        await self.cache.clear(account)
        self.registry.remove(account.email)
        logger.info("Removed account %s", account.email)

        if was_current and self.registry.accounts:
            await self.switch_account(self.registry.accounts[0].email)
        else:
            await self.registry.save()
        return True

    async def switch_account(self, email):
        account = self.registry.get(email)
        if account is None:
            raise ValidationError(f"Unknown account: {email}")

        previous = self.current_account
        if previous is not None and previous.key != account.key:
            old_scheduler = self._schedulers.get(previous.key)
            if old_scheduler is not None:
                old_scheduler.stop()
            cancel_event = self._enrichment_cancel.get(previous.key)
            if cancel_event is not None:
                cancel_event.set()

        self.registry.current_email = account.email
        await self.registry.save()
        use_account = getattr(self.session, "use_account", None)
        if use_account is not None:
            use_account(account.email)

        mailbox = self.mailbox_for(account)
        mailbox.clear_filters()
        cached = self.cache.get(account)
        if cached is None:
            cached = await self.cache.load_into_memory(account)
        if cached:
            mailbox.replace_all(cached)
            self.scheduler_for(account).start()
            self._spawn(self.refresh_incremental(), account=account)
            logger.info("Switched to %s with %d cached items", account.email, len(cached))
        else:
            logger.info("Switched to %s with an empty cache; running a full refresh", account.email)
            await self.full_refresh()
        return mailbox

    # Refresh

    async def _ensure_session(self, account, mailbox, user_initiated):
        try:
            if await self.session.has_session(account.email) and await self.session.refresh_if_needed():
                mailbox.clear_reauth()
                return True
        except MailError as exc:
            logger.warning("Session check failed for %s: %s", account.email, exc)
            if not isinstance(exc, AuthRequiredError):
                if user_initiated:
                    mailbox.flash_status("Failed to refresh", FAILURE_MESSAGE_TTL_SEC)
                return False
        if user_initiated:
            mailbox.request_reauth(REAUTH_MESSAGE)
        else:
            logger.debug("Skipping background refresh for %s: no session", account.email)
        return False

    def _report_failure(self, account, mailbox, exc, user_initiated):
        logger.warning("Refresh failed for %s: %s", account.email, exc)
        if isinstance(exc, AuthRequiredError):
            if user_initiated:
                mailbox.request_reauth(REAUTH_MESSAGE)
            return
        if user_initiated:
            mailbox.flash_status("Failed to refresh", FAILURE_MESSAGE_TTL_SEC)

    def _fetch_limit(self, category):
        limits = self.config.get("category_fetch_limits") or {}
        try:
            return max(1, int(limits.get(category.value, CATEGORY_FETCH_LIMITS[category.value])))
        except (TypeError, ValueError, AttributeError):
            return CATEGORY_FETCH_LIMITS[category.value]

    async def _enrich_into(self, account, mailbox, targets):
        if self.classifier is None or not targets:
            return 0
        cancel_event = asyncio.Event()
        previous = self._enrichment_cancel.get(account.key)
        if previous is not None:
            previous.set()
        self._enrichment_cancel[account.key] = cancel_event
        delay = self.config.get("enrichment_delay_sec", ENRICHMENT_DELAY_SEC)
        try:
            processed = await enrich_items(targets, self.classifier, cancel_event=cancel_event, delay=delay)
        finally:
            if self._enrichment_cancel.get(account.key) is cancel_event:
                del self._enrichment_cancel[account.key]
        if not self._owns(account, mailbox):
            return 0
        return mailbox.apply_enrichment(processed)

    async def _mark_synced(self, account):
        updated = self.registry.get(account.email)
        if updated is not None:
            self.registry.update(replace(updated, last_sync=utcnow()))
            await self.registry.save()

    async def full_refresh(self, force_reanalyze=False):
        """Fetch every folder category, merge, enrich, persist and publish."""
        account = self._require_current()
        mailbox = self.mailbox_for(account)
        mailbox.set_loading(True)
        try:
            if not await self._ensure_session(account, mailbox, user_initiated=True):
                return False

            categories = list(FULL_REFRESH_CATEGORIES)
            results = await asyncio.gather(
                *(self.provider.fetch_by_category(category.value, self._fetch_limit(category)) for category in categories),
                return_exceptions=True,
            )
            if not self._owns(account, mailbox):
                return False
            batches = []
            errors = []
            for category, result in zip(categories, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning("Fetching %s for %s failed: %s", category.value, account.email, result)
                    errors.append(result)
                    continue
                batches.append(result)
            if not batches:
                self._report_failure(account, mailbox, errors[0], user_initiated=True)
                return False

            fetched = merge_sources(batches)
            mailbox.fold_in(fetched)
            await self._enrich_into(account, mailbox, needs_enrichment(mailbox.items, force_reanalyze))
            if not self._owns(account, mailbox):
                return False
            await self.cache.replace(account, mailbox.items)
            await self._mark_synced(account)
            mailbox.flash_status("All emails loaded")
            if mailbox.items:
                self.scheduler_for(account).start()
            logger.info("Full refresh for %s: %d items (%d categories failed)", account.email, len(mailbox), len(errors))
            return True
        finally:
            mailbox.set_loading(False)

    async def refresh_incremental(self, force_reanalyze=False, user_initiated=False):
        """Fetch recent mail and fold it in. Returns the number of new items."""
        account = self.current_account
        if account is None:
            return 0
        mailbox = self.mailbox_for(account)
        if user_initiated:
            mailbox.set_loading(True)
        try:
            if not await self._ensure_session(account, mailbox, user_initiated):
                return 0

            since = max((item.timestamp for item in mailbox.items), default=None)
            hours_key, hours_default = (
                ("manual_refresh_hours", MANUAL_REFRESH_HOURS)
                if user_initiated
                else ("recent_fetch_hours", RECENT_FETCH_HOURS)
            )
            hours_ago = self.config.get(hours_key, hours_default)
            try:
                fetched = await self.provider.fetch_recent(since=since, hours_ago=hours_ago)
            except MailError as exc:
                self._report_failure(account, mailbox, exc, user_initiated)
                return 0
            if not self._owns(account, mailbox):
                return 0

            fresh = new_items(mailbox.items, fetched)
            mailbox.fold_in(fetched)
            if force_reanalyze:
                fetched_keys = {item_key(item) for item in fetched}
                targets = [item for item in mailbox.items if item_key(item) in fetched_keys]
            else:
                fresh_ids = {item.id for item in fresh}
                targets = [item for item in mailbox.items if item.id in fresh_ids and not item.enriched]
            await self._enrich_into(account, mailbox, targets)
            if not self._owns(account, mailbox):
                return 0
            await self.cache.replace(account, mailbox.items)

            count = len(fresh)
            if count:
                mailbox.flash_status(f"{count} new {'email' if count == 1 else 'emails'}")
            elif user_initiated:
                mailbox.flash_status("No new emails")
            logger.debug("Incremental refresh for %s: %d fetched, %d new", account.email, len(fetched), count)
            if user_initiated and mailbox.items:
                self.scheduler_for(account).start()
            return count
        finally:
            if user_initiated:
                mailbox.set_loading(False)

    async def _scheduled_tick(self, account_key):
        current = self.current_account
        if current is None or current.key != account_key:
            return
        await self.refresh_incremental()

    async def reanalyze(self, item_id):
        """Classify one item again on demand and return its stored copy."""
        account = self._require_current()
        mailbox = self.mailbox_for(account)
        item = mailbox.get(item_id)
        if item is None:
            raise ValidationError(f"Unknown mail item: {item_id}")
        if self.classifier is None:
            return item
        processed = await enrich_items([item], self.classifier, delay=0)
        if not self._owns(account, mailbox):
            return None
        if mailbox.apply_enrichment(processed):
            await self.cache.replace(account, mailbox.items)
        return mailbox.get(item_id)

    def clear_caches(self):
        """Drop every memory-tier cache; mailboxes keep what they show."""
        self.cache.clear_all()

    # Mutations

    async def mutate(self, item_id, kind):
        return await self.mutations_for(self._require_current()).apply(item_id, kind)

    @property
    def mutations(self):
        return self.mutations_for(self._require_current())

    # Saved filters

    def saved_filters(self):
        filters = []
        for entry in self.config.get("saved_filters") or []:
            try:
                filters.append(SavedFilter.from_dict(entry))
            except DecodeError as exc:
                logger.debug("Ignoring saved filter: %s", exc)
        return filters

    def save_filter(self, title, query):
        query = (query or "").strip()
        if not query:
            raise ValidationError("A saved filter needs a query.")
        saved = SavedFilter(title=(title or "").strip() or query, query=query)
        remaining = [entry for entry in self.saved_filters() if entry.query != query]
        self.config.set("saved_filters", [entry.to_dict() for entry in [saved, *remaining]])
        return saved

    def remove_filter(self, query):
        filters = self.saved_filters()
        remaining = [entry for entry in filters if entry.query != query]
        if len(remaining) == len(filters):
            return False
        self.config.set("saved_filters", [entry.to_dict() for entry in remaining])
        return True


__all__ = ["AccountRegistry", "FULL_REFRESH_CATEGORIES", "MailSyncService"]
