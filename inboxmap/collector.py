"""
Message Collector - Streams inbox sender records from Gmail
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, List, Optional

from inboxmap.errors import MalformedRecord, TransportError
from inboxmap.gmail_service import GmailFetcher
from inboxmap.grouping import parse_from_header
from inboxmap.models import FetchConfig, MessageRecord, ProgressPhase


logger = logging.getLogger(__name__)


@dataclass
class FetchUpdate:
    """One step of a streaming fetch: progress, plus the records so far after each batch"""
    phase: ProgressPhase
    progress: int
    records: Optional[List[MessageRecord]] = None
    complete: bool = False


class MessageCollector:
    """Lists inbox message ids, then fetches sender metadata batch by batch"""

    def __init__(
        self,
        fetcher: GmailFetcher,
        config: Optional[FetchConfig] = None,
        is_cancelled: Callable[[], bool] = lambda: False
    ):
        self.fetcher = fetcher
        self.config = config or fetcher.config
        self.is_cancelled = is_cancelled

    # === Full Fetch ===

    async def stream_inbox(self) -> AsyncIterator[FetchUpdate]:
        """Yield listing progress, then the growing record list after every batch"""
        message_ids: List[str] = []
        page_token = None

        while True:
            page_ids, page_token = await self.fetcher.list_message_ids(page_token)
            if self.is_cancelled():
                return
            message_ids.extend(page_ids)
            yield FetchUpdate(ProgressPhase.LISTING, len(message_ids))
            if not page_token:
                break

        logger.info(f"Listed {len(message_ids)} inbox messages")

        records: List[MessageRecord] = []
        async for batch_records in self._fetch_batches(message_ids):
            records.extend(batch_records)
            yield FetchUpdate(ProgressPhase.FETCHING, len(records), records=list(records) if batch_records else None)

        if self.is_cancelled():
            return
        yield FetchUpdate(ProgressPhase.FETCHING, len(records), records=records, complete=True)

    # === Incremental Fetch ===

    async def stream_new(self, known_ids: Iterable[str]) -> AsyncIterator[FetchUpdate]:
        """Like stream_inbox, but only for messages newer than the first known id"""
        known = set(known_ids)
        new_ids: List[str] = []
        page_token = None
        found_known = False

        while True:
            page_ids, page_token = await self.fetcher.list_message_ids(page_token)
            if self.is_cancelled():
                return
            for message_id in page_ids:
                if message_id in known:
                    found_known = True
                    break
                new_ids.append(message_id)
            if found_known or not page_token:
                break

        logger.info(f"Found {len(new_ids)} new inbox messages")

        records: List[MessageRecord] = []
        async for batch_records in self._fetch_batches(new_ids):
            records.extend(batch_records)
            yield FetchUpdate(ProgressPhase.UPDATING, len(records))

        if self.is_cancelled():
            return
        yield FetchUpdate(ProgressPhase.UPDATING, len(records), records=records, complete=True)

    # === Metadata ===

    async def _fetch_batches(self, message_ids: List[str]) -> AsyncIterator[List[MessageRecord]]:
        for start in range(0, len(message_ids), self.config.batch_size):
            batch = message_ids[start:start + self.config.batch_size]
            results = await asyncio.gather(*(self._fetch_record(message_id) for message_id in batch))
            if self.is_cancelled():
                logger.info("Fetch cancelled, discarding batch")
                return
            yield [record for record in results if record is not None]

    async def _fetch_record(self, message_id: str) -> Optional[MessageRecord]:
        """Fetch one record; transport failures and missing senders drop just this message"""
        try:
            metadata = await self.fetcher.get_message_metadata(message_id)
            return self.build_record(message_id, metadata)
        except MalformedRecord:
            logger.debug(f"Dropping message {message_id} without a From header")
        except TransportError as error:
            logger.warning(f"Dropping message {message_id}: {error}")
        return None

    @staticmethod
    def build_record(message_id: str, metadata: dict) -> MessageRecord:
        from_header = (metadata.get('from_header') or '').strip()
        if not from_header:
            raise MalformedRecord(f"Message {message_id} has no From header")

        email, name = parse_from_header(from_header)
        return MessageRecord(sender=email, name=name, unread=metadata.get('is_unread', False), message_id=message_id)
