import asyncio
from decimal import Decimal

import pytest

from shares_gate.errors import RPCError
from shares_gate.models import Checkpoint
from shares_gate.sync import ADVANCED, IDLE, RETRY, SyncEngine, SyncIntervals

from .fakes import trade

NO_WAIT = SyncIntervals(idle_sec=0, retry_sec=0, pace_sec=0)


@pytest.fixture
def engine(chain, storage, ledger, policy) -> SyncEngine:
    return SyncEngine(chain, storage, ledger, policy, NO_WAIT)


def test_checkpoint_initialised_from_chain_start(storage, ledger, policy, chain):
    chain.start = 1234
    engine = SyncEngine(chain, storage, ledger, policy, NO_WAIT)
    assert engine.load_checkpoint().position == 1234
    # a persisted checkpoint wins over the configured start
    chain.start = 1
    assert engine.load_checkpoint().position == 1234


@pytest.mark.asyncio()
async def test_position_is_monotonic_and_failure_keeps_it(engine, chain, storage):
    chain.script = [
        [trade("a:0", "0x01", "0x02", True, 1)],
        [],
        RPCError("node down"),
        [trade("b:0", "0x01", "0x02", True, 1)],
    ]
    positions = []
    outcomes = []
    for _ in range(4):
        outcomes.append(await engine.step())
        positions.append(storage.get_checkpoint("chainA").position)

    assert outcomes == [ADVANCED, ADVANCED, RETRY, ADVANCED]
    assert positions == [1, 2, 2, 3]
    assert engine.stats["fetch_errors"] == 1


@pytest.mark.asyncio()
async def test_caught_up_is_idle(engine, chain, storage):
    chain.script = [None]
    assert await engine.step() == IDLE
    assert storage.get_checkpoint("chainA").position == 0


@pytest.mark.asyncio()
async def test_bad_event_is_skipped_and_batch_still_checkpoints(engine, chain, storage):
    chain.script = [
        [
            trade("a:0", "0x01", "0x02", True, 5),
            {"bad": True},
            trade("a:1", "0x01", "0x02", True, 3),
        ]
    ]
    assert await engine.step() == ADVANCED
    assert storage.get_share_amount("01", "02", "chainA") == Decimal(8)
    assert storage.get_checkpoint("chainA").position == 1
    assert engine.stats["failed_events"] == 1
    assert engine.stats["applied_events"] == 2


@pytest.mark.asyncio()
async def test_replayed_batch_does_not_double_count(engine, chain, storage):
    batch = [trade("a:0", "0x01", "0x02", True, 5), trade("a:1", "0x01", "0x02", False, 2)]
    chain.script = [list(batch)]
    await engine.step()

    # crash before the checkpoint advanced: the same window comes back
    storage.conn.execute("UPDATE sync_status SET last_position = 0")
    storage.conn.commit()
    engine.checkpoint = None
    chain.script = [list(batch)]
    await engine.step()

    assert storage.get_share_amount("01", "02", "chainA") == Decimal(3)


@pytest.mark.asyncio()
async def test_notifier_failure_does_not_stop_the_batch(engine, chain, storage, notifier):
    storage.upsert_identity_mapping("01", "chainA", "42")
    notifier.fail = True
    chain.script = [
        [
            trade("a:0", "0x01", "0x02", True, 5),
            trade("a:1", "0x01", "0x02", False, 5),
            trade("a:2", "0x01", "0x02", True, 1),
        ]
    ]
    assert await engine.step() == ADVANCED
    assert storage.get_share_amount("01", "02", "chainA") == Decimal(1)
    assert engine.stats["failed_events"] == 0


def test_save_checkpoint_never_moves_backwards(storage):
    storage.save_checkpoint(Checkpoint("chainA", 50, "c1"))
    saved = storage.save_checkpoint(Checkpoint("chainA", 10, "c2"))
    assert saved.position == 50
    assert saved.cursor_token == "c2"


@pytest.mark.asyncio()
async def test_run_exits_when_stopped(engine, chain):
    chain.script = [[trade("a:0", "0x01", "0x02", True, 1)]]
    engine.intervals = SyncIntervals(idle_sec=30, retry_sec=30, pace_sec=30)
    task = asyncio.create_task(engine.run())
    await asyncio.sleep(0.05)
    engine.stop()
    await asyncio.wait_for(task, timeout=1)
    assert engine.stats["state"] == "stopped"
    assert engine.stats["batches"] == 1
