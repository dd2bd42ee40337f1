"""
Unit tests for the SQLite record store.

Tests cover:
- Chain creation and keyed, non-negative total adjustments
- Position/bet creation in one transaction
- Conditional updates on stored status
- change_log images written alongside every mutation
- Credential cache, fee collections and feed cursors
"""
import pytest

from parlay.core.retry import ConditionFailedError, ResourceNotFoundError
from parlay.domain.models import Chain, ChainLeg, ChangeEventName, RecordType
from parlay.domain.money import to_micro
from parlay.domain.status import BetStatus, MarketStatus, Outcome, PositionStatus, Side
from tests.factories import make_bet, make_market, make_position


def _chain(chain_id: str = "chain_1") -> Chain:
    return Chain(
        chain_id=chain_id,
        legs=[ChainLeg(sequence=1, condition_id="cond_1", token_id="token_1", side=Side.YES)],
    )


async def _seed(store, stake: str = "100.00"):
    await store.create_chain_if_absent(_chain())
    position = make_position(initial_stake=stake, total_legs=2)
    bets = [
        make_bet(sequence=1, status=BetStatus.READY),
        make_bet(sequence=2, status=BetStatus.QUEUED),
    ]
    await store.create_position_with_bets(position, bets)
    return position, bets


class TestChains:
    @pytest.mark.asyncio
    async def test_create_if_absent(self, record_store):
        assert await record_store.create_chain_if_absent(_chain()) is True
        assert await record_store.create_chain_if_absent(_chain()) is False

        chain = await record_store.get_chain("chain_1")
        assert chain.legs[0].condition_id == "cond_1"
        assert chain.total_value == "0.000000"

    @pytest.mark.asyncio
    async def test_adjust_total(self, record_store):
        await record_store.create_chain_if_absent(_chain())
        assert await record_store.adjust_chain_total("chain_1", to_micro("5")) == to_micro("5")
        chain = await record_store.get_chain("chain_1")
        assert chain.total_value == "5.000000"

    @pytest.mark.asyncio
    async def test_adjust_refuses_negative(self, record_store):
        await record_store.create_chain_if_absent(_chain())
        with pytest.raises(ConditionFailedError):
            await record_store.adjust_chain_total("chain_1", -1)
        chain = await record_store.get_chain("chain_1")
        assert chain.total_value == "0.000000"

    @pytest.mark.asyncio
    async def test_keyed_adjustment_applies_once(self, record_store):
        await _seed(record_store)
        first = await record_store.adjust_chain_total(
            "chain_1", -to_micro("100"), adjustment_key="release:pos_1"
        )
        second = await record_store.adjust_chain_total(
            "chain_1", -to_micro("100"), adjustment_key="release:pos_1"
        )
        assert first == 0
        assert second == 0

    @pytest.mark.asyncio
    async def test_adjust_unknown_chain(self, record_store):
        with pytest.raises(ResourceNotFoundError):
            await record_store.adjust_chain_total("chain_missing", 1)


class TestPositionsAndBets:
    @pytest.mark.asyncio
    async def test_create_adds_stake_to_chain(self, record_store):
        await _seed(record_store, stake="100.00")
        chain = await record_store.get_chain("chain_1")
        assert chain.total_value == "100.000000"

        bets = await record_store.get_bets_for_position("pos_1")
        assert [b.sequence for b in bets] == [1, 2]
        assert bets[0].status == BetStatus.READY

    @pytest.mark.asyncio
    async def test_create_requires_chain(self, record_store):
        with pytest.raises(ResourceNotFoundError):
            await record_store.create_position_with_bets(make_position(), [make_bet()])
        assert await record_store.get_position("pos_1") is None

    @pytest.mark.asyncio
    async def test_conditional_bet_update(self, record_store):
        _, bets = await _seed(record_store)
        bet = bets[0]
        bet.status = BetStatus.EXECUTING
        await record_store.update_bet(bet, expected_status=BetStatus.READY)

        bet.status = BetStatus.PLACED
        with pytest.raises(ConditionFailedError):
            await record_store.update_bet(bet, expected_status=BetStatus.READY)

        stored = await record_store.get_bet(bet.bet_id)
        assert stored.status == BetStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_conditional_position_update(self, record_store):
        position, _ = await _seed(record_store)
        position.status = PositionStatus.FAILED
        await record_store.update_position(position, expected_status=PositionStatus.ACTIVE)

        with pytest.raises(ConditionFailedError):
            await record_store.update_position(position, expected_status=PositionStatus.ACTIVE)

    @pytest.mark.asyncio
    async def test_bets_for_condition_filters_status(self, record_store):
        await _seed(record_store)
        ready = await record_store.get_bets_for_condition("cond_1", [BetStatus.READY])
        assert len(ready) == 1
        assert await record_store.get_bets_for_condition("cond_1", [BetStatus.FILLED]) == []

    @pytest.mark.asyncio
    async def test_positions_for_wallet(self, record_store):
        position, _ = await _seed(record_store)
        found = await record_store.get_positions_for_wallet(
            position.wallet_address.upper(), "chain_1"
        )
        assert [p.position_id for p in found] == ["pos_1"]


class TestChangeLog:
    @pytest.mark.asyncio
    async def test_every_write_is_logged_in_order(self, record_store):
        _, bets = await _seed(record_store)
        bet = bets[0]
        bet.status = BetStatus.EXECUTING
        await record_store.update_bet(bet, expected_status=BetStatus.READY)

        changes = await record_store.read_changes(0, limit=100)
        kinds = [(c.record_type, c.event_name) for c in changes]
        assert kinds[0] == (RecordType.CHAIN, ChangeEventName.INSERT)
        assert (RecordType.POSITION, ChangeEventName.INSERT) in kinds
        assert [c.seq for c in changes] == sorted(c.seq for c in changes)

        last = changes[-1]
        assert last.record_type == RecordType.BET
        assert last.event_name == ChangeEventName.MODIFY
        assert last.old_image["status"] == "READY"
        assert last.new_image["status"] == "EXECUTING"

    @pytest.mark.asyncio
    async def test_failed_condition_writes_no_change(self, record_store):
        _, bets = await _seed(record_store)
        before = await record_store.latest_seq()
        bet = bets[0]
        bet.status = BetStatus.EXECUTING
        with pytest.raises(ConditionFailedError):
            await record_store.update_bet(bet, expected_status=BetStatus.QUEUED)
        assert await record_store.latest_seq() == before

    @pytest.mark.asyncio
    async def test_filter_by_record_type(self, record_store):
        await _seed(record_store)
        await record_store.put_market(
            make_market("cond_1", MarketStatus.RESOLVED, outcome=Outcome.YES)
        )
        markets = await record_store.read_changes(0, record_type=RecordType.MARKET)
        assert len(markets) == 1
        assert markets[0].new().outcome == Outcome.YES
        assert await record_store.latest_seq(RecordType.MARKET) == markets[0].seq


class TestAuxiliaryTables:
    @pytest.mark.asyncio
    async def test_credentials_cache(self, record_store):
        assert await record_store.get_credentials("0xABC") is None
        await record_store.save_credentials("0xABC", "k", "s", "p")
        assert await record_store.get_credentials("0xabc") == {
            "api_key": "k",
            "api_secret": "s",
            "api_passphrase": "p",
        }

    @pytest.mark.asyncio
    async def test_fee_collections(self, record_store):
        await record_store.record_fee_collection("pos_1", "0xabc", "2.00", False, error="boom")
        await record_store.record_fee_collection("pos_1", "0xabc", "2.00", True, tx_hash="0xtx")
        rows = await record_store.get_fee_collections("pos_1")
        assert [r["success"] for r in rows] == [False, True]
        assert rows[1]["tx_hash"] == "0xtx"

    @pytest.mark.asyncio
    async def test_cursors(self, record_store):
        assert await record_store.get_cursor("bet_executor") == 0
        await record_store.set_cursor("bet_executor", 12)
        await record_store.set_cursor("bet_executor", 15)
        assert await record_store.get_cursor("bet_executor") == 15

    @pytest.mark.asyncio
    async def test_health_check(self, record_store):
        health = await record_store.health_check()
        assert health["status"] == "healthy"


class TestTransactions:
    @pytest.mark.asyncio
    async def test_block_that_raises_is_rolled_back(self, record_store):
        with pytest.raises(RuntimeError, match="abort"):
            async with record_store._pool.transaction() as conn:
                await conn.execute(
                    "INSERT INTO feed_cursors (subscription, last_seq, updated_at) VALUES (?, ?, ?)",
                    ("bet_executor", 7, "2026-01-01T00:00:00+00:00"),
                )
                raise RuntimeError("abort")

        assert await record_store.get_cursor("bet_executor") == 0

    @pytest.mark.asyncio
    async def test_refused_adjustment_leaves_total_and_log(self, record_store):
        await record_store.create_chain_if_absent(_chain())
        before = await record_store.latest_seq()

        with pytest.raises(ConditionFailedError):
            await record_store.adjust_chain_total("chain_1", -1, adjustment_key="release:p")

        assert await record_store.latest_seq() == before
        # The key was not consumed, so a valid retry still applies
        await record_store.adjust_chain_total("chain_1", to_micro("2"))
        total = await record_store.adjust_chain_total("chain_1", -1, adjustment_key="release:p")
        assert total == to_micro("2") - 1
