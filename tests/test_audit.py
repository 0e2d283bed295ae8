import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from rwa_arb.audit import AuditChain, CsvAuditStore, MemoryAuditStore, digest, sign
from rwa_arb.errors import ChainIntegrityError
from rwa_arb.models import GENESIS_HASH, AuditType


async def _fill(audit, n):
    return [await audit.append(AuditType.MINT, f"0x{i:040x}", amount=i * 100) for i in range(n)]


async def test_appended_chain_verifies(audit):
    await _fill(audit, 10)

    assert await audit.verify() is True


async def test_first_entry_links_to_genesis(audit):
    first = await audit.append(AuditType.SPREAD_DETECTED, "OUSG sepolia->mumbai", details={"spread_bps": 81.3})

    assert first.seq == 1
    assert first.previous_hash == GENESIS_HASH


async def test_each_entry_links_to_its_predecessor(audit):
    entries = await _fill(audit, 5)

    for prev, cur in zip(entries, entries[1:]):
        assert cur.previous_hash == prev.hash
        assert cur.seq == prev.seq + 1
    for e in entries:
        assert e.hash == digest(e.payload())
        assert e.signature == sign("test-secret", e.hash)


async def test_decimal_amounts_are_stored_as_plain_strings(audit):
    entry = await audit.append(AuditType.BURN, "0xabc", amount=Decimal("5E+3"),
                               details={"price": Decimal("98.40")})

    assert entry.amount == "5000"
    assert entry.details == {"price": "98.40"}


async def test_mutated_payload_fails_verification(audit):
    await _fill(audit, 4)
    store = audit.store
    store._entries[2] = replace(store._entries[2], amount="999999")

    assert await audit.verify() is False
    with pytest.raises(ChainIntegrityError):
        await audit.assert_intact()


async def test_rehashed_entry_still_breaks_the_link(audit):
    await _fill(audit, 4)
    store = audit.store
    forged = replace(store._entries[1], amount="1")
    forged = replace(forged, hash=digest(forged.payload()))
    store._entries[1] = forged

    ok, seq = await audit.check()
    assert ok is False
    assert seq in (2, 3)


async def test_forged_signature_fails_verification(audit):
    await _fill(audit, 3)
    store = audit.store
    store._entries[0] = replace(store._entries[0], signature=sign("wrong-secret", store._entries[0].hash))

    assert await audit.verify() is False


async def test_concurrent_appends_never_fork_the_chain(audit):
    entries = await asyncio.gather(*[
        audit.append(AuditType.SPREAD_DETECTED, f"route-{i}", details={"i": i}) for i in range(50)
    ])

    assert len({e.previous_hash for e in entries}) == 50
    assert sorted(e.seq for e in entries) == list(range(1, 51))
    assert await audit.verify() is True


async def test_list_returns_most_recent_first(audit):
    await _fill(audit, 5)

    latest = await audit.list(3)

    assert [e.seq for e in latest] == [5, 4, 3]


async def test_store_rejects_append_on_stale_tail(audit):
    first = await audit.append(AuditType.MINT, "0x1")
    await audit.append(AuditType.MINT, "0x2")

    with pytest.raises(ChainIntegrityError):
        await audit.store.append(replace(first, previous_hash=GENESIS_HASH), GENESIS_HASH)


async def test_append_requires_started_writer(logger):
    chain = AuditChain(MemoryAuditStore(), "secret", logger)

    with pytest.raises(RuntimeError):
        await chain.append(AuditType.MINT, "0x1")


def test_empty_secret_is_refused(logger):
    with pytest.raises(ValueError):
        AuditChain(MemoryAuditStore(), "", logger)


# --- CSV persistence ---

async def test_csv_chain_survives_restart(tmp_path, logger):
    path = str(tmp_path / "audit" / "chain.csv")

    chain = AuditChain(CsvAuditStore(path), "secret", logger, region="eu")
    await chain.start()
    before = await _fill(chain, 3)
    await chain.stop()

    reopened = AuditChain(CsvAuditStore(path), "secret", logger, region="eu")
    await reopened.start()
    nxt = await reopened.append(AuditType.ERROR, "OUSG sepolia->mumbai", details={"error": "boom"})
    ok = await reopened.verify()
    await reopened.stop()

    assert nxt.seq == 4
    assert nxt.previous_hash == before[-1].hash
    assert ok is True


async def test_csv_file_edit_is_detected(tmp_path, logger):
    path = tmp_path / "chain.csv"
    chain = AuditChain(CsvAuditStore(str(path)), "secret", logger)
    await chain.start()
    await chain.append(AuditType.MINT, "0xaaa", amount=100)
    await chain.append(AuditType.MINT, "0xbbb", amount=200)
    assert await chain.verify() is True

    text = path.read_text()
    assert '"0xaaa","100"' in text
    path.write_text(text.replace('"0xaaa","100"', '"0xaaa","900"'))

    assert await chain.verify() is False
    await chain.stop()
