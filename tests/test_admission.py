"""
Integration tests for the queue admission engine against SQLite.

Covers joining (idempotent, one active entry per fan and match), position
reporting, head-of-line promotion and administrative expiry.
"""

import asyncio

import pytest
from sqlalchemy import text

from fanqueue.errors import IdentityUnavailable
from fanqueue.identity import SessionContext
from fanqueue.model import admission, catalog

from conftest import T0, WINDOW


async def _queue_rows(db, match_id):
    async with db.session.begin():
        rows = (await db.session.execute(text(
            "SELECT id, user_id, status FROM queue WHERE match_id=:m "
            "ORDER BY id"
        ), {"m": match_id})).mappings().all()
    return [dict(r) for r in rows]


@pytest.mark.integration
class TestJoinQueue:
    @pytest.mark.asyncio
    async def test_join_creates_waiting_entry(self, db, match, new_fan):
        # Given
        fan = new_fan()

        # When
        entry = await admission.join_queue(db, fan, match["id"], now_ts=T0)

        # Then
        assert entry.status == "waiting"
        assert entry.user_id == fan.identifier
        assert entry.match_id == match["id"]
        assert entry.joined_at == T0
        assert entry.expires_at is None
        assert await admission.get_position(
            db, fan, match["id"], now_ts=T0) == 0

    @pytest.mark.asyncio
    async def test_join_is_idempotent(self, db, match, new_fan):
        fan = new_fan()
        first = await admission.join_queue(db, fan, match["id"], now_ts=T0)
        again = await admission.join_queue(
            db, fan, match["id"], now_ts=T0 + 30)

        assert again == first
        assert len(await _queue_rows(db, match["id"])) == 1

    @pytest.mark.asyncio
    async def test_join_while_processing_returns_processing_entry(
        self, db, match, new_fan, locks
    ):
        fan = new_fan()
        await admission.join_queue(db, fan, match["id"], now_ts=T0)
        assert await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0)

        entry = await admission.join_queue(
            db, fan, match["id"], now_ts=T0 + 1)

        assert entry.status == "processing"
        assert len(await _queue_rows(db, match["id"])) == 1

    @pytest.mark.asyncio
    async def test_concurrent_joins_leave_one_entry(
        self, open_db, match, new_fan
    ):
        # Given: the same fan in two tabs
        fan = new_fan()

        # When
        a, b = await asyncio.gather(
            admission.join_queue(open_db(), fan, match["id"], now_ts=T0),
            admission.join_queue(open_db(), fan, match["id"], now_ts=T0),
        )

        # Then
        assert a.id == b.id
        assert len(await _queue_rows(open_db(), match["id"])) == 1

    @pytest.mark.asyncio
    async def test_rejoin_after_expiry_creates_new_entry(
        self, db, match, new_fan, locks
    ):
        fan = new_fan()
        old = await admission.join_queue(db, fan, match["id"], now_ts=T0)
        await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0)

        # window elapsed; joining again settles the old entry first
        new = await admission.join_queue(
            db, fan, match["id"], now_ts=T0 + WINDOW + 1)

        assert new.id != old.id
        assert new.status == "waiting"
        statuses = [r["status"] for r in await _queue_rows(db, match["id"])]
        assert statuses == ["expired", "waiting"]

    @pytest.mark.asyncio
    async def test_join_requires_identity(self, db, match):
        with pytest.raises(IdentityUnavailable):
            await admission.join_queue(
                db, SessionContext("server-side"), match["id"], now_ts=T0)
        assert await _queue_rows(db, match["id"]) == []


@pytest.mark.integration
class TestPosition:
    @pytest.mark.asyncio
    async def test_positions_follow_join_order(self, db, match, new_fan):
        # Given: three fans join one second apart
        fans = [new_fan() for _ in range(3)]
        for i, fan in enumerate(fans):
            await admission.join_queue(db, fan, match["id"], now_ts=T0 + i)

        # Then
        positions = [
            await admission.get_position(db, fan, match["id"], now_ts=T0 + 5)
            for fan in fans
        ]
        assert positions == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_identical_join_times_break_ties_by_insertion(
        self, db, match, new_fan, locks
    ):
        first, second = new_fan(), new_fan()
        await admission.join_queue(db, first, match["id"], now_ts=T0)
        await admission.join_queue(db, second, match["id"], now_ts=T0)

        assert await admission.get_position(
            db, first, match["id"], now_ts=T0) == 0
        assert await admission.get_position(
            db, second, match["id"], now_ts=T0) == 1
        # promotion agrees with position
        assert not await admission.check_and_promote_if_turn(
            db, second, match["id"], locks, now_ts=T0)
        assert await admission.check_and_promote_if_turn(
            db, first, match["id"], locks, now_ts=T0)

    @pytest.mark.asyncio
    async def test_position_without_entry_is_none(self, db, match, new_fan):
        assert await admission.get_position(
            db, new_fan(), match["id"], now_ts=T0) is None

    @pytest.mark.asyncio
    async def test_queue_status_returns_entry_and_position(
        self, db, match, new_fan
    ):
        a, b = new_fan(), new_fan()
        await admission.join_queue(db, a, match["id"], now_ts=T0)
        joined = await admission.join_queue(db, b, match["id"], now_ts=T0 + 1)

        entry, position = await admission.get_queue_status(
            db, b, match["id"], now_ts=T0 + 2)

        assert entry == joined
        assert position == 1

    @pytest.mark.asyncio
    async def test_processing_entries_are_not_ahead(
        self, db, match, new_fan, locks
    ):
        # Given: the head fan was promoted
        a, b = new_fan(), new_fan()
        await admission.join_queue(db, a, match["id"], now_ts=T0)
        await admission.join_queue(db, b, match["id"], now_ts=T0 + 1)
        await admission.check_and_promote_if_turn(
            db, a, match["id"], locks, now_ts=T0 + 2)

        # Then: only waiting entries count
        assert await admission.get_position(
            db, b, match["id"], now_ts=T0 + 2) == 0

    @pytest.mark.asyncio
    async def test_queues_are_per_match(self, db, match, new_fan):
        other = await catalog.create_match(
            db, match_name="RCB vs KKR", venue="Chinnaswamy",
            match_datetime=T0 + 86400, booking_opens_at=T0 - 1,
        )
        a, b = new_fan(), new_fan()
        await admission.join_queue(db, a, match["id"], now_ts=T0)
        await admission.join_queue(db, b, other["id"], now_ts=T0 + 1)

        assert await admission.get_position(
            db, b, other["id"], now_ts=T0 + 2) == 0


@pytest.mark.integration
class TestPromotion:
    @pytest.mark.asyncio
    async def test_head_of_line_is_promoted(self, db, match, new_fan, locks):
        # Given
        fan = new_fan()
        await admission.join_queue(db, fan, match["id"], now_ts=T0)

        # When
        promoted = await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0 + 10,
            window_seconds=WINDOW,
        )

        # Then
        assert promoted is True
        entry = await admission.get_entry(
            db, fan, match["id"], now_ts=T0 + 10)
        assert entry.status == "processing"
        assert entry.promoted_at == T0 + 10
        assert entry.expires_at == T0 + 10 + WINDOW
        assert entry.seconds_left(T0 + 20) == WINDOW - 10

    @pytest.mark.asyncio
    async def test_second_in_line_is_not_promoted(
        self, db, match, new_fan, locks
    ):
        a, b = new_fan(), new_fan()
        await admission.join_queue(db, a, match["id"], now_ts=T0)
        await admission.join_queue(db, b, match["id"], now_ts=T0 + 1)

        assert not await admission.check_and_promote_if_turn(
            db, b, match["id"], locks, now_ts=T0 + 2)
        entry = await admission.get_entry(db, b, match["id"], now_ts=T0 + 2)
        assert entry.status == "waiting"

    @pytest.mark.asyncio
    async def test_line_advances_after_head_is_promoted(
        self, db, match, new_fan, locks
    ):
        a, b = new_fan(), new_fan()
        await admission.join_queue(db, a, match["id"], now_ts=T0)
        await admission.join_queue(db, b, match["id"], now_ts=T0 + 1)

        assert await admission.check_and_promote_if_turn(
            db, a, match["id"], locks, now_ts=T0 + 2)
        assert await admission.check_and_promote_if_turn(
            db, b, match["id"], locks, now_ts=T0 + 3)

    @pytest.mark.asyncio
    async def test_promotion_is_not_repeated(
        self, db, match, new_fan, locks
    ):
        fan = new_fan()
        await admission.join_queue(db, fan, match["id"], now_ts=T0)
        assert await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0)

        # already processing: no second promotion, window unchanged
        assert not await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0 + 60)
        entry = await admission.get_entry(db, fan, match["id"], now_ts=T0 + 60)
        assert entry.expires_at == T0 + WINDOW

    @pytest.mark.asyncio
    async def test_concurrent_checks_promote_exactly_once(
        self, open_db, match, new_fan, locks
    ):
        # Given: the head fan polls from several tabs at once
        fan = new_fan()
        await admission.join_queue(open_db(), fan, match["id"], now_ts=T0)

        # When
        results = await asyncio.gather(*[
            admission.check_and_promote_if_turn(
                open_db(), fan, match["id"], locks, now_ts=T0 + 1)
            for _ in range(5)
        ])

        # Then
        assert sorted(results) == [False, False, False, False, True]

    @pytest.mark.asyncio
    async def test_concurrent_checks_from_many_fans_promote_only_head(
        self, open_db, match, new_fan, locks
    ):
        fans = [new_fan() for _ in range(4)]
        db = open_db()
        for i, fan in enumerate(fans):
            await admission.join_queue(db, fan, match["id"], now_ts=T0 + i)

        results = await asyncio.gather(*[
            admission.check_and_promote_if_turn(
                open_db(), fan, match["id"], locks, now_ts=T0 + 10)
            for fan in reversed(fans)
        ])

        assert results == [False, False, False, True]

    @pytest.mark.asyncio
    async def test_check_without_entry_is_false(
        self, db, match, new_fan, locks
    ):
        assert not await admission.check_and_promote_if_turn(
            db, new_fan(), match["id"], locks, now_ts=T0)


@pytest.mark.integration
class TestExpiry:
    @pytest.mark.asyncio
    async def test_overdue_entry_is_expired_on_read(
        self, db, match, new_fan, locks
    ):
        fan = new_fan()
        await admission.join_queue(db, fan, match["id"], now_ts=T0)
        await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0)

        entry = await admission.get_entry(
            db, fan, match["id"], now_ts=T0 + WINDOW)

        assert entry.status == "expired"
        rows = await _queue_rows(db, match["id"])
        assert rows[0]["status"] == "expired"

    @pytest.mark.asyncio
    async def test_expire_if_overdue_respects_window(
        self, db, match, new_fan, locks
    ):
        fan = new_fan()
        entry = await admission.join_queue(db, fan, match["id"], now_ts=T0)
        await admission.check_and_promote_if_turn(
            db, fan, match["id"], locks, now_ts=T0)

        assert not await admission.expire_if_overdue(
            db, entry.id, now_ts=T0 + WINDOW - 1)
        assert await admission.expire_if_overdue(
            db, entry.id, now_ts=T0 + WINDOW)
        # second call is a no-op
        assert not await admission.expire_if_overdue(
            db, entry.id, now_ts=T0 + WINDOW + 1)

    @pytest.mark.asyncio
    async def test_expire_overdue_only_touches_overdue_processing(
        self, db, match, new_fan, locks
    ):
        a, b, c = new_fan(), new_fan(), new_fan()
        ea = await admission.join_queue(db, a, match["id"], now_ts=T0)
        await admission.check_and_promote_if_turn(
            db, a, match["id"], locks, now_ts=T0)
        await admission.join_queue(db, b, match["id"], now_ts=T0 + 1)
        await admission.check_and_promote_if_turn(
            db, b, match["id"], locks, now_ts=T0 + 300)
        await admission.join_queue(db, c, match["id"], now_ts=T0 + 2)

        expired = await admission.expire_overdue(db, now_ts=T0 + WINDOW + 1)

        assert expired == [ea.id]
        statuses = [r["status"] for r in await _queue_rows(db, match["id"])]
        assert statuses == ["expired", "processing", "waiting"]

    @pytest.mark.asyncio
    async def test_admin_expire_entry(self, db, match, new_fan):
        fan = new_fan()
        entry = await admission.join_queue(db, fan, match["id"], now_ts=T0)

        expired = await admission.expire_entry(db, entry.id)

        assert expired.id == entry.id
        assert expired.status == "expired"
        # terminal entries are left alone
        assert await admission.expire_entry(db, entry.id) is None
        assert await admission.expire_entry(db, 9999) is None

    @pytest.mark.asyncio
    async def test_list_entries_in_queue_order(self, db, match, new_fan):
        fans = [new_fan() for _ in range(3)]
        for i, fan in enumerate(reversed(fans)):
            await admission.join_queue(db, fan, match["id"], now_ts=T0 - i)

        entries = await admission.list_entries(db, match["id"])

        assert [e.user_id for e in entries] == [f.identifier for f in fans]
        assert len(await admission.list_entries(
            db, match["id"], limit=2)) == 2

    @pytest.mark.asyncio
    async def test_list_processing(self, db, match, new_fan, locks):
        a, b = new_fan(), new_fan()
        await admission.join_queue(db, a, match["id"], now_ts=T0)
        await admission.join_queue(db, b, match["id"], now_ts=T0 + 1)
        await admission.check_and_promote_if_turn(
            db, a, match["id"], locks, now_ts=T0 + 2)

        processing = await admission.list_processing(db)

        assert [e.user_id for e in processing] == [a.identifier]


@pytest.mark.unit
class TestQueueEntry:
    def test_to_dict_uses_iso_times(self):
        entry = admission.QueueEntry(
            id=1, user_id="u", match_id="m", joined_at=0.0,
            status="processing", promoted_at=0.0, expires_at=600.0,
        )
        out = entry.to_dict()
        assert out["joined_at"] == "1970-01-01T00:00:00+00:00"
        assert out["expires_at"] == "1970-01-01T00:10:00+00:00"
        assert "user_id" not in out

    def test_overdue_only_for_processing(self):
        waiting = admission.QueueEntry(
            id=1, user_id="u", match_id="m", joined_at=0.0, status="waiting")
        assert not waiting.overdue(10**10)
        assert waiting.seconds_left(0) is None
