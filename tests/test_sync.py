"""
Tests for SyncOrchestrator
"""

import asyncio
from dataclasses import replace

import pytest

from inboxmap.errors import AccountMismatch, SyncInProgress
from inboxmap.gmail_service import GmailSession
from inboxmap.models import (
    DomainColorInfo, ProgressPhase, SyncState, SyncStatus, colors_from_entries
)
from inboxmap.storage import META_DOMAIN_COLORS, META_HIERARCHY, META_MESSAGE_IDS, META_PROFILE, RecordStore
from inboxmap.sync import SyncOrchestrator

from conftest import MockGmailService, make_message, make_record


class FakeEnricher:
    """Stands in for ColorEnricher: every domain gets the same color, optionally after a gate opens"""

    def __init__(self, gate: asyncio.Event = None):
        self.gate = gate
        self.requested = []

    async def enrich(self, domains, on_result, is_current=lambda: True):
        self.requested.append(list(domains))
        if self.gate:
            await self.gate.wait()

        results = {}
        for domain in domains:
            if not is_current():
                return results
            info = DomainColorInfo(color='#112233', favicon_url=f'https://icons.test/{domain}')
            await on_result(domain, info)
            results[domain] = info
        return results


class BrokenStore(RecordStore):
    """Record store whose records can no longer be read"""

    async def load_records(self):
        raise OSError("disk gone")


class HookedStore(RecordStore):
    """Record store that runs a callback before every records write"""

    def __init__(self, config, before_save=None):
        super().__init__(config)
        self.before_save = before_save

    async def save_records(self, records):
        if self.before_save:
            self.before_save()
        await super().save_records(records)


class StateRecorder:
    """on_change callback that keeps every published state"""

    def __init__(self):
        self.states = []

    async def __call__(self, state: SyncState):
        self.states.append(state)

    @property
    def statuses(self):
        return [state.status for state in self.states]


@pytest.fixture
def recorder():
    return StateRecorder()


@pytest.fixture
def orchestrator(store, fetch_config, recorder):
    return SyncOrchestrator(store, config=fetch_config, on_change=recorder)


EXPECTED_DOMAINS = {'github.com', 'test.co.uk', 'edge.com', 'shop.com'}


# === Full Fetch ===

@pytest.mark.asyncio
class TestFullFetch:
    """Tests for full_fetch"""

    async def test_reaches_done(self, orchestrator, mock_session):
        await orchestrator.full_fetch(mock_session)
        state = orchestrator.state

        assert state.status is SyncStatus.DONE
        assert state.progress == 6
        assert state.progress_phase is ProgressPhase.NONE
        assert state.error is None
        assert len(state.records) == 6
        assert {node.id for node in state.hierarchy} == EXPECTED_DOMAINS

    async def test_persists_results(self, orchestrator, mock_session, store):
        await orchestrator.full_fetch(mock_session)

        assert len(await store.load_records()) == 6
        assert len(await store.load_meta(META_MESSAGE_IDS)) == 6
        assert await store.load_meta(META_PROFILE) == 'me@example.com'
        assert {node['id'] for node in await store.load_meta(META_HIERARCHY)} == EXPECTED_DOMAINS

    async def test_every_domain_has_a_color(self, orchestrator, mock_session):
        await orchestrator.full_fetch(mock_session)
        state = orchestrator.state

        assert set(state.domain_colors) == {node.id for node in state.hierarchy}
        assert all(info.color.startswith('#') for info in state.domain_colors.values())

    async def test_publishes_partial_hierarchies(self, orchestrator, mock_session, recorder):
        await orchestrator.full_fetch(mock_session)

        fetching = [state for state in recorder.states if state.status is SyncStatus.FETCHING]
        phases = {state.progress_phase for state in fetching}
        partial = [state for state in fetching if state.hierarchy]

        assert {ProgressPhase.LISTING, ProgressPhase.FETCHING} <= phases
        assert partial
        assert len(partial[0].records) < 6
        assert recorder.statuses[-1] is SyncStatus.DONE
        assert SyncStatus.PROCESSING in recorder.statuses

    async def test_auth_expired(self, orchestrator, sample_messages):
        session = GmailSession(service=MockGmailService(sample_messages, list_errors=[401]))
        await orchestrator.full_fetch(session)

        assert orchestrator.state.status is SyncStatus.ERROR
        assert orchestrator.state.error == 'AUTH_EXPIRED'

    async def test_transport_failure(self, orchestrator, sample_messages):
        session = GmailSession(service=MockGmailService(sample_messages, list_errors=[403]))
        await orchestrator.full_fetch(session)

        assert orchestrator.state.status is SyncStatus.ERROR
        assert '403' in orchestrator.state.error

    async def test_rejects_concurrent_sync(self, orchestrator, mock_session):
        orchestrator.state = SyncState(status=SyncStatus.FETCHING)
        with pytest.raises(SyncInProgress):
            await orchestrator.full_fetch(mock_session)

    async def test_empty_inbox(self, orchestrator, empty_session):
        await orchestrator.full_fetch(empty_session)
        assert orchestrator.state.status is SyncStatus.DONE
        assert orchestrator.state.hierarchy == []


# === Incremental Fetch ===

@pytest.mark.asyncio
class TestIncrementalFetch:
    """Tests for incremental_fetch"""

    async def test_prepends_new_messages(self, orchestrator, mock_session, mock_gmail_service):
        await orchestrator.full_fetch(mock_session)
        mock_gmail_service.messages.insert(0, make_message('msg_000', 'Fresh <hello@fresh.io>', unread=True))

        await orchestrator.incremental_fetch(mock_session)
        state = orchestrator.state

        assert state.status is SyncStatus.DONE
        assert [record.message_id for record in state.records][:2] == ['msg_000', 'msg_001']
        assert len(state.records) == 7
        assert 'fresh.io' in {node.id for node in state.hierarchy}

    async def test_no_duplicates(self, orchestrator, mock_session, store):
        await orchestrator.full_fetch(mock_session)
        await orchestrator.incremental_fetch(mock_session)

        ids = [record.message_id for record in await store.load_records()]
        assert len(ids) == len(set(ids)) == 6

    async def test_progress_phase(self, orchestrator, mock_session, recorder):
        await orchestrator.incremental_fetch(mock_session)
        phases = {state.progress_phase for state in recorder.states if state.status is SyncStatus.FETCHING}
        assert phases == {ProgressPhase.UPDATING}

    async def test_auth_expired_while_checking_account(self, orchestrator, sample_messages, recorder):
        session = GmailSession(service=MockGmailService(sample_messages, profile_errors=[401]))
        await orchestrator.incremental_fetch(session)

        assert orchestrator.state.status is SyncStatus.ERROR
        assert orchestrator.state.error == 'AUTH_EXPIRED'
        assert recorder.statuses == [SyncStatus.ERROR]

    async def test_auth_expired_while_listing(self, orchestrator, mock_session, sample_messages):
        await orchestrator.full_fetch(mock_session)
        session = GmailSession(service=MockGmailService(sample_messages, list_errors=[401]))

        await orchestrator.incremental_fetch(session)

        assert orchestrator.state.status is SyncStatus.ERROR
        assert orchestrator.state.error == 'AUTH_EXPIRED'

    async def test_transport_failure(self, orchestrator, sample_messages):
        session = GmailSession(service=MockGmailService(sample_messages, list_errors=[403]))
        await orchestrator.incremental_fetch(session)

        assert orchestrator.state.status is SyncStatus.ERROR
        assert '403' in orchestrator.state.error

    async def test_unreadable_store(self, store, fetch_config, mock_session):
        orchestrator = SyncOrchestrator(BrokenStore(store.config), config=fetch_config)
        await orchestrator.incremental_fetch(mock_session)

        assert orchestrator.state.status is SyncStatus.ERROR
        assert orchestrator.state.error == 'disk gone'

    async def test_account_mismatch_leaves_state_alone(self, orchestrator, mock_session, recorder):
        await orchestrator.full_fetch(mock_session)
        published = len(recorder.states)
        other = GmailSession(service=MockGmailService([], email='someone.else@example.com'))

        with pytest.raises(AccountMismatch):
            await orchestrator.incremental_fetch(other)

        assert orchestrator.state.status is SyncStatus.DONE
        assert len(recorder.states) == published


@pytest.mark.asyncio
class TestVerifyAccount:
    """Tests for the stored-mailbox guard"""

    async def test_same_account(self, orchestrator, mock_session):
        await orchestrator.full_fetch(mock_session)
        assert await orchestrator.verify_account(mock_session) == 'me@example.com'

    async def test_other_account(self, orchestrator, mock_session):
        await orchestrator.full_fetch(mock_session)
        other = GmailSession(service=MockGmailService([], email='someone.else@example.com'))

        with pytest.raises(AccountMismatch):
            await orchestrator.verify_account(other)

    async def test_nothing_stored(self, orchestrator, mock_session):
        assert await orchestrator.verify_account(mock_session) == 'me@example.com'


# === Restore ===

@pytest.mark.asyncio
class TestRestore:
    """Tests for restore"""

    async def test_nothing_cached(self, orchestrator, recorder):
        assert await orchestrator.restore() is False
        assert orchestrator.state.status is SyncStatus.IDLE
        assert recorder.states == []

    async def test_fast_path_from_cached_hierarchy(self, store, fetch_config, mock_session):
        await SyncOrchestrator(store, config=fetch_config).full_fetch(mock_session)

        restored = SyncOrchestrator(store, config=fetch_config)
        assert await restored.restore() is True

        assert restored.state.status is SyncStatus.DONE
        assert restored.state.progress == 6
        assert {node.id for node in restored.state.hierarchy} == EXPECTED_DOMAINS
        assert restored.state.records == []

        await restored.wait_for_background()
        assert len(restored.state.records) == 6

    async def test_rebuilds_from_records(self, orchestrator, store):
        await store.save_records([
            make_record('a@x.com', message_id='m1'),
            make_record('b@x.com', message_id='m2'),
            make_record('c@y.org', message_id='m3'),
        ])

        assert await orchestrator.restore() is True
        assert orchestrator.state.status is SyncStatus.DONE
        assert [node.id for node in orchestrator.state.hierarchy] == ['x.com', 'y.org']
        assert len(await store.load_meta(META_HIERARCHY)) == 2

    async def test_restoring_published_first(self, orchestrator, store, recorder):
        await store.save_records([make_record('a@x.com')])
        await orchestrator.restore()
        assert recorder.statuses == [SyncStatus.RESTORING, SyncStatus.DONE]

    async def test_unreadable_records(self, store, fetch_config, mock_session):
        await store.save_records([make_record('a@x.com', message_id='m1')])
        orchestrator = SyncOrchestrator(BrokenStore(store.config), config=fetch_config)

        assert await orchestrator.restore() is False
        assert orchestrator.state.status is SyncStatus.ERROR
        assert orchestrator.state.error == 'disk gone'

        # the failed restore does not block a fresh fetch
        await orchestrator.full_fetch(mock_session)
        assert orchestrator.state.status is SyncStatus.DONE

    async def test_unreadable_records_after_fast_path(self, store, fetch_config, mock_session):
        await SyncOrchestrator(store, config=fetch_config).full_fetch(mock_session)
        orchestrator = SyncOrchestrator(BrokenStore(store.config), config=fetch_config)

        assert await orchestrator.restore() is True
        await orchestrator.wait_for_background()

        assert orchestrator.state.status is SyncStatus.ERROR
        assert orchestrator.state.error == 'disk gone'


# === Reset ===

@pytest.mark.asyncio
class TestReset:
    """Tests for reset"""

    async def test_from_done(self, orchestrator, mock_session, store):
        await orchestrator.full_fetch(mock_session)
        await orchestrator.reset()

        assert orchestrator.state == SyncState()
        assert await store.has_any_records() is False
        assert await store.load_meta(META_HIERARCHY) is None

    async def test_from_idle(self, orchestrator, recorder):
        await orchestrator.reset()
        assert orchestrator.state.status is SyncStatus.IDLE
        assert recorder.statuses == [SyncStatus.IDLE]

    async def test_during_fetch(self, store, fetch_config, mock_session):
        holder = {}

        async def reset_on_first_batch(state):
            if state.status is SyncStatus.FETCHING and state.hierarchy and not holder.get('done'):
                holder['done'] = True
                await holder['orchestrator'].reset()

        orchestrator = SyncOrchestrator(store, config=fetch_config, on_change=reset_on_first_batch)
        holder['orchestrator'] = orchestrator

        await orchestrator.full_fetch(mock_session)

        assert holder['done']
        assert orchestrator.state == SyncState()
        assert await store.has_any_records() is False
        assert await store.load_meta(META_MESSAGE_IDS) is None

    async def test_error_state_cleared(self, orchestrator, sample_messages):
        await orchestrator.full_fetch(GmailSession(service=MockGmailService(sample_messages, list_errors=[401])))
        await orchestrator.reset()
        assert orchestrator.state.error is None
        assert orchestrator.state.status is SyncStatus.IDLE


# === Enrichment ===

@pytest.mark.asyncio
class TestEnrichment:
    """Tests for background color enrichment"""

    async def test_colors_merged_and_persisted(self, store, fetch_config, mock_session):
        enricher = FakeEnricher()
        orchestrator = SyncOrchestrator(store, enricher=enricher, config=fetch_config)

        await orchestrator.full_fetch(mock_session)
        await orchestrator.wait_for_background()

        assert set(enricher.requested[0]) == EXPECTED_DOMAINS
        assert all(info.color == '#112233' for info in orchestrator.state.domain_colors.values())

        stored = colors_from_entries(await store.load_meta(META_DOMAIN_COLORS))
        assert stored['github.com'].favicon_url == 'https://icons.test/github.com'

    async def test_enriched_domains_not_requested_again(self, store, fetch_config, mock_session):
        first = SyncOrchestrator(store, enricher=FakeEnricher(), config=fetch_config)
        await first.full_fetch(mock_session)
        await first.wait_for_background()

        enricher = FakeEnricher()
        second = SyncOrchestrator(store, enricher=enricher, config=fetch_config)
        await second.restore()
        await second.wait_for_background()

        assert enricher.requested == []
        assert second.state.domain_colors['shop.com'].color == '#112233'

    async def test_stale_results_dropped_after_reset(self, store, fetch_config, mock_session):
        gate = asyncio.Event()
        orchestrator = SyncOrchestrator(store, enricher=FakeEnricher(gate), config=fetch_config)

        await orchestrator.full_fetch(mock_session)
        await orchestrator.reset()
        gate.set()
        await orchestrator.wait_for_background()

        assert orchestrator.state.domain_colors == {}
        assert await store.load_meta(META_DOMAIN_COLORS) is None

    async def test_merge_during_commit_survives(self, store, fetch_config, mock_session):
        enriched = DomainColorInfo(color='#abcdef', favicon_url='https://icons.test/github.com')
        hooked = HookedStore(store.config)
        orchestrator = SyncOrchestrator(hooked, config=fetch_config)

        def merge_github():
            colors = {**orchestrator.state.domain_colors, 'github.com': enriched}
            orchestrator.state = replace(orchestrator.state, domain_colors=colors)

        hooked.before_save = merge_github
        await orchestrator.full_fetch(mock_session)

        assert orchestrator.state.status is SyncStatus.DONE
        assert orchestrator.state.domain_colors['github.com'] == enriched
        assert set(orchestrator.state.domain_colors) >= EXPECTED_DOMAINS

        stored = colors_from_entries(await store.load_meta(META_DOMAIN_COLORS))
        assert stored['github.com'] == enriched
