"""
Sync Orchestrator - Keeps the hierarchy current from Gmail, the local cache and favicon enrichment
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, List, Optional, Set

from inboxmap.collector import MessageCollector
from inboxmap.colors import seed_fallback_colors
from inboxmap.errors import AccountMismatch, AuthExpired, SyncInProgress
from inboxmap.favicon import ColorEnricher
from inboxmap.gmail_service import GmailFetcher, GmailSession
from inboxmap.grouping import get_count, group_records
from inboxmap.models import (
    DomainColorInfo, DomainNode, FetchConfig, MessageRecord, ProgressPhase,
    SyncState, SyncStatus, colors_from_entries, colors_to_entries, node_from_dict
)
from inboxmap.storage import (
    META_DOMAIN_COLORS, META_HIERARCHY, META_LAST_FETCH, META_MESSAGE_IDS,
    META_PROFILE, RecordStore
)
from inboxmap.treemap import visible_domain_ids


logger = logging.getLogger(__name__)

BUSY_STATUSES = {SyncStatus.RESTORING, SyncStatus.FETCHING, SyncStatus.PROCESSING}

StateCallback = Callable[[SyncState], Awaitable[None]]


class SyncOrchestrator:
    """
    Owns the SyncState cell and drives restore, full fetch, incremental fetch and reset.

    Every operation captures the current epoch when it starts; reset() bumps the
    epoch, and an operation that sees a newer epoch after any await stops without
    touching state or storage.
    """

    def __init__(
        self,
        store: RecordStore,
        enricher: Optional[ColorEnricher] = None,
        config: Optional[FetchConfig] = None,
        on_change: Optional[StateCallback] = None,
        others_label: str = "Others"
    ):
        self.store = store
        self.enricher = enricher
        self.config = config or FetchConfig()
        self.on_change = on_change
        self.others_label = others_label

        self.state = SyncState()
        self._epoch = 0
        self._write_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    # === State ===

    def _token(self) -> Callable[[], bool]:
        """Returns a check that is true once a reset has happened since this call"""
        epoch = self._epoch
        return lambda: self._epoch != epoch

    async def _publish(self, **changes) -> None:
        self.state = replace(self.state, **changes)
        if self.on_change:
            await self.on_change(self.state)

    def _rebuild(self, records: List[MessageRecord]) -> dict:
        """Fresh hierarchy for records, with a color for every domain in it"""
        hierarchy = group_records(records)
        colors = seed_fallback_colors((node.id for node in hierarchy), self.state.domain_colors)
        return {'records': records, 'hierarchy': hierarchy, 'domain_colors': colors}

    def _ensure_idle(self) -> None:
        if self.state.status in BUSY_STATUSES:
            raise SyncInProgress("Sync already in progress")

    async def _write(self, cancelled: Callable[[], bool], write: Callable[[], Awaitable[None]]) -> bool:
        """Run a storage write unless the operation has been cancelled"""
        async with self._write_lock:
            if cancelled():
                return False
            await write()
            return True

    async def _fail(self, error: Exception, cancelled: Callable[[], bool]) -> None:
        if cancelled():
            logger.info(f"Ignoring failure from cancelled sync: {error}")
            return
        message = AuthExpired.code if isinstance(error, AuthExpired) else str(error)
        logger.error(f"Sync failed: {message}", exc_info=not isinstance(error, AuthExpired))
        await self._publish(status=SyncStatus.ERROR, error=message)

    # === Restore ===

    async def restore(self) -> bool:
        """
        Load cached data. Returns False when nothing is cached or loading fails.

        A cached hierarchy is shown right away and the raw records follow in
        the background; otherwise the hierarchy is rebuilt from stored records.
        """
        self._ensure_idle()
        cancelled = self._token()

        try:
            cached_hierarchy = await self.store.load_meta(META_HIERARCHY)
            if cancelled():
                return False
            if cached_hierarchy:
                return await self._restore_hierarchy(cached_hierarchy, cancelled)
            return await self._restore_records(cancelled)
        except Exception as error:
            await self._fail(error, cancelled)
            return False

    async def _restore_hierarchy(self, cached_hierarchy: List[dict], cancelled: Callable[[], bool]) -> bool:
        await self._publish(status=SyncStatus.RESTORING, progress_phase=ProgressPhase.RESTORING)
        hierarchy = [node_from_dict(data) for data in cached_hierarchy]
        cached_colors = colors_from_entries(await self.store.load_meta(META_DOMAIN_COLORS))
        if cancelled():
            return False

        await self._publish(
            status=SyncStatus.DONE,
            progress=sum(get_count(node) for node in hierarchy),
            progress_phase=ProgressPhase.NONE,
            hierarchy=hierarchy,
            domain_colors=seed_fallback_colors((node.id for node in hierarchy), cached_colors),
            error=None
        )
        logger.info(f"Restored cached hierarchy with {len(hierarchy)} domains")
        if cancelled():
            return True
        self._spawn(self._load_records_later(cancelled))
        self._start_enrichment(hierarchy, cancelled)
        return True

    async def _restore_records(self, cancelled: Callable[[], bool]) -> bool:
        if not await self.store.has_any_records() or cancelled():
            return False

        await self._publish(status=SyncStatus.RESTORING, progress_phase=ProgressPhase.RESTORING)
        records = await self.store.load_records()
        cached_colors = colors_from_entries(await self.store.load_meta(META_DOMAIN_COLORS))
        if cancelled():
            return False

        self.state = replace(self.state, domain_colors=cached_colors)
        rebuilt = self._rebuild(records)
        await self._write(cancelled, lambda: self.store.save_meta(
            META_HIERARCHY, [node.to_dict() for node in rebuilt['hierarchy']]
        ))
        if cancelled():
            return False

        await self._publish(
            status=SyncStatus.DONE,
            progress=len(records),
            progress_phase=ProgressPhase.NONE,
            error=None,
            **rebuilt
        )
        logger.info(f"Rebuilt hierarchy from {len(records)} cached records")
        self._start_enrichment(rebuilt['hierarchy'], cancelled)
        return True

    async def _load_records_later(self, cancelled: Callable[[], bool]) -> None:
        try:
            records = await self.store.load_records()
        except Exception as error:
            # only fail the restore this load belongs to, not a fetch that started since
            if self.state.status is SyncStatus.DONE:
                await self._fail(error, cancelled)
            return

        # a fetch that started meanwhile owns the record list now
        if cancelled() or self.state.status is not SyncStatus.DONE or self.state.records:
            return
        await self._publish(records=records)
        logger.debug(f"Loaded {len(records)} cached records in the background")

    # === Fetching ===

    async def full_fetch(self, session: GmailSession) -> None:
        """Fetch the whole inbox, republishing the hierarchy after every batch"""
        self._ensure_idle()
        cancelled = self._token()
        await self._publish(status=SyncStatus.FETCHING, progress=0, progress_phase=ProgressPhase.LISTING, error=None)

        try:
            fetcher = GmailFetcher(session, self.config)
            collector = MessageCollector(fetcher, self.config, is_cancelled=cancelled)
            profile_email = await fetcher.get_profile_email()
            if cancelled():
                return

            records: List[MessageRecord] = []
            async for update in collector.stream_inbox():
                if cancelled():
                    return
                if update.complete:
                    records = update.records
                    break
                changes = {'progress': update.progress, 'progress_phase': update.phase}
                if update.records:
                    changes.update(self._rebuild(update.records))
                await self._publish(**changes)

            if cancelled():
                return
            await self._publish(status=SyncStatus.PROCESSING, progress_phase=ProgressPhase.PROCESSING, records=records)
            await self._commit(records, cancelled, profile_email)

        except Exception as error:
            await self._fail(error, cancelled)

    async def incremental_fetch(self, session: GmailSession) -> None:
        """
        Fetch only messages newer than the stored ones and prepend them.

        Raises AccountMismatch, before any state change, when the session
        belongs to a different mailbox than the stored data.
        """
        self._ensure_idle()
        cancelled = self._token()

        try:
            profile_email = await self.verify_account(session)
            if cancelled():
                return
            await self._publish(status=SyncStatus.FETCHING, progress=0, progress_phase=ProgressPhase.UPDATING, error=None)

            known_ids = await self.store.load_meta(META_MESSAGE_IDS) or []
            existing = await self.store.load_records()
            if cancelled():
                return

            collector = MessageCollector(GmailFetcher(session, self.config), self.config, is_cancelled=cancelled)
            new_records: List[MessageRecord] = []
            async for update in collector.stream_new(known_ids):
                if cancelled():
                    return
                if update.complete:
                    new_records = update.records
                    break
                await self._publish(progress=update.progress, progress_phase=update.phase)

            if cancelled():
                return

            existing_ids = set(known_ids) | {record.message_id for record in existing if record.message_id}
            new_records = [record for record in new_records if record.message_id not in existing_ids]
            logger.info(f"Adding {len(new_records)} new records to {len(existing)} stored")
            await self._commit(new_records + existing, cancelled, profile_email)

        except AccountMismatch:
            raise
        except Exception as error:
            await self._fail(error, cancelled)

    async def verify_account(self, session: GmailSession) -> str:
        """Make sure the session belongs to the mailbox whose data is stored"""
        email = await GmailFetcher(session, self.config).get_profile_email()
        stored = await self.store.load_meta(META_PROFILE)
        if stored and email and stored.lower() != email.lower():
            raise AccountMismatch(f"Signed in as {email}, but stored data belongs to {stored}")
        return email

    async def _commit(
        self,
        records: List[MessageRecord],
        cancelled: Callable[[], bool],
        profile_email: Optional[str] = None
    ) -> None:
        """Persist a finished fetch, publish Done, then start enrichment"""
        rebuilt = self._rebuild(records)
        domain_ids = [node.id for node in rebuilt['hierarchy']]
        message_ids = [record.message_id for record in records if record.message_id]

        def current_colors():
            # enrichment merges may land while the writes below are awaited
            return seed_fallback_colors(domain_ids, self.state.domain_colors)

        writes = [
            lambda: self.store.save_records(records),
            lambda: self.store.save_meta(META_MESSAGE_IDS, message_ids),
            lambda: self.store.save_meta(META_LAST_FETCH, int(time.time() * 1000)),
            lambda: self.store.save_meta(META_HIERARCHY, [node.to_dict() for node in rebuilt['hierarchy']]),
            lambda: self.store.save_meta(META_DOMAIN_COLORS, colors_to_entries(current_colors())),
        ]
        if profile_email:
            writes.append(lambda: self.store.save_meta(META_PROFILE, profile_email))

        for write in writes:
            if not await self._write(cancelled, write):
                return
        if cancelled():
            return

        rebuilt['domain_colors'] = current_colors()
        await self._publish(
            status=SyncStatus.DONE,
            progress=len(records),
            progress_phase=ProgressPhase.NONE,
            error=None,
            **rebuilt
        )
        logger.info(f"Sync complete: {len(records)} records, {len(rebuilt['hierarchy'])} domains")
        self._start_enrichment(rebuilt['hierarchy'], cancelled)

    # === Enrichment ===

    def _start_enrichment(self, hierarchy: List[DomainNode], cancelled: Callable[[], bool]) -> None:
        if self.enricher is None:
            return
        domains = [
            domain_id for domain_id in visible_domain_ids(hierarchy, others_label=self.others_label)
            if not self.state.domain_colors.get(domain_id, DomainColorInfo('')).favicon_url
        ]
        if domains:
            self._spawn(self._enrich(domains, cancelled))

    async def _enrich(self, domains: List[str], cancelled: Callable[[], bool]) -> None:
        async def merge(domain_id: str, info: DomainColorInfo) -> None:
            if cancelled():
                return
            colors = dict(self.state.domain_colors)
            colors[domain_id] = info
            await self._publish(domain_colors=colors)
            await self._write(cancelled, lambda: self.store.save_meta(META_DOMAIN_COLORS, colors_to_entries(colors)))

        try:
            await self.enricher.enrich(domains, merge, is_current=lambda: not cancelled())
        except Exception as e:
            logger.warning(f"Color enrichment stopped early: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        """Wait for background record loading and enrichment to finish"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # === Reset ===

    async def reset(self) -> None:
        """Cancel anything in flight, clear storage and return to Idle"""
        self._epoch += 1
        async with self._write_lock:
            await self.store.clear_all()
        self.state = SyncState()
        if self.on_change:
            await self.on_change(self.state)
        logger.info("Sync state reset")
