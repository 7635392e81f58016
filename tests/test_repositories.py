"""
PostgreSQL repository tests.

These use the database fixtures from conftest and are skipped when no PostgreSQL server is reachable.
"""

from cryptography.fernet import Fernet
import pytest
from sqlalchemy import select

from brave.bpc.auth.repository import TokenRepository
from brave.bpc.model.blueprints import BlueprintEventRecord
from brave.bpc.model.tokens import CharacterTokenRecord
from brave.bpc.reconcile.reconciler import Reconciler
from brave.bpc.reconcile.repository import BlueprintRepository
from tests.test_helpers import NOW, make_record, make_token

CORP = 98000001


@pytest.fixture
def encryption_key():
    return Fernet(Fernet.generate_key())


class TestTokenRepository:

    async def test_save_and_load(self, session_maker, encryption_key):
        repository = TokenRepository(session_maker, encryption_key)
        token = make_token(
            90000001, {"esi-corporations.read_blueprints.v1", "publicData"}, corporation_id=98000001
        )

        await repository.save(token)

        assert await repository.load_all() == [token]

    async def test_tokens_are_encrypted_at_rest(self, session_maker, session, encryption_key):
        repository = TokenRepository(session_maker, encryption_key)
        await repository.save(make_token(90000001, {"publicData"}, access_token="plain-access"))

        row = (await session.scalars(select(CharacterTokenRecord))).one()

        assert row.access_token != "plain-access"
        assert encryption_key.decrypt(row.access_token.encode()) == b"plain-access"
        assert row.refresh_token != "refresh-90000001"

    async def test_save_replaces_previous_authorization(self, session_maker, encryption_key):
        repository = TokenRepository(session_maker, encryption_key)
        await repository.save(make_token(90000001, {"publicData"}))
        replacement = make_token(
            90000001, {"esi-corporations.read_blueprints.v1"}, access_token="second-access"
        )

        await repository.save(replacement)

        assert await repository.load_all() == [replacement]

    async def test_delete(self, session_maker, encryption_key):
        repository = TokenRepository(session_maker, encryption_key)
        await repository.save(make_token(90000001, {"publicData"}))

        assert await repository.delete(90000001)
        assert not await repository.delete(90000001)
        assert await repository.load_all() == []

    async def test_rows_under_another_key_are_skipped(self, session_maker, encryption_key):
        await TokenRepository(session_maker, Fernet(Fernet.generate_key())).save(
            make_token(90000001, {"publicData"})
        )
        await TokenRepository(session_maker, encryption_key).save(make_token(90000002, {"publicData"}))

        tokens = await TokenRepository(session_maker, encryption_key).load_all()

        assert [t.character_id for t in tokens] == [90000002]


class TestBlueprintRepository:

    async def test_run_persists_snapshot_and_events(self, session_maker, session):
        repository = BlueprintRepository(session_maker)
        reconciler = Reconciler(repository)
        fetched = [make_record(2, runs=10), make_record(1)]

        async def fetch():
            return fetched

        events = await reconciler.run(CORP, fetch, now=NOW)

        assert events is not None and len(events) == 2
        assert await repository.load_snapshot(CORP) == fetched

        rows = (await session.scalars(select(BlueprintEventRecord))).all()
        assert sorted(row.event_id for row in rows) == sorted(e.id for e in events)
        assert {row.kind for row in rows} == {"added"}

    async def test_changes_and_removals(self, session_maker):
        repository = BlueprintRepository(session_maker)
        reconciler = Reconciler(repository)

        async def first():
            return [make_record(1, runs=5), make_record(2)]

        async def second():
            return [make_record(1, runs=1)]

        await reconciler.run(CORP, first, now=NOW)
        events = await reconciler.run(CORP, second, now=NOW)

        assert events is not None
        assert [(e.kind.value, e.record.type_id) for e in events] == [("changed", 1), ("removed", 2)]
        assert await repository.load_snapshot(CORP) == [make_record(1, runs=1)]

        recent = await repository.recent_events(CORP)
        assert len(recent) == 4
        assert recent[0].event_id == events[-1].id

    async def test_snapshots_are_per_corporation(self, session_maker):
        repository = BlueprintRepository(session_maker)
        reconciler = Reconciler(repository)

        async def fetch():
            return [make_record(1)]

        await reconciler.run(CORP, fetch)

        assert await repository.load_snapshot(CORP + 1) == []
        assert await repository.recent_events(CORP + 1) == []
