# rwa_arb/audit.py
import asyncio
import hashlib
import hmac
import json
import logging
import os
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
from aiocsv import AsyncDictReader, AsyncDictWriter

from .errors import ChainIntegrityError
from .models import GENESIS_HASH, AuditEntry, AuditType


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def digest(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode()).hexdigest()


def sign(secret: str, entry_hash: str) -> str:
    return hmac.new(secret.encode(), entry_hash.encode(), hashlib.sha256).hexdigest()


# --- Stores ---
# A store only persists finalized entries. `append` is conditioned on the tail:
# it refuses an entry whose previous_hash is not the hash currently at the end.

class MemoryAuditStore:
    def __init__(self):
        self._entries: List[AuditEntry] = []

    async def open(self):
        pass

    async def last(self) -> Optional[AuditEntry]:
        return self._entries[-1] if self._entries else None

    async def tail(self, n: int) -> List[AuditEntry]:
        if n <= 0:
            return []
        return list(reversed(self._entries[-n:]))

    async def all(self) -> List[AuditEntry]:
        return list(self._entries)

    async def append(self, entry: AuditEntry, expected_previous_hash: str) -> AuditEntry:
        current = self._entries[-1] if self._entries else None
        _check_tail(current, expected_previous_hash)
        stored = replace(entry, seq=current.seq + 1 if current else 1)
        self._entries.append(stored)
        return stored


class CsvAuditStore:
    """
    Append-only CSV file. Rows are never rewritten; reads go back to disk so an
    auditor always sees what is actually persisted.
    """
    FIELDS = ["seq", "type", "subject", "amount", "details", "region",
              "timestamp", "previous_hash", "hash", "signature"]

    def __init__(self, filepath: str):
        self.filepath = filepath
        self._tail: Optional[AuditEntry] = None

    async def open(self):
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            async with aiofiles.open(self.filepath, mode='w', newline='') as f:
                writer = AsyncDictWriter(f, self.FIELDS, dialect='unix')
                await writer.writeheader()
            self._tail = None
        else:
            entries = await self.all()
            self._tail = entries[-1] if entries else None

    async def last(self) -> Optional[AuditEntry]:
        return self._tail

    async def tail(self, n: int) -> List[AuditEntry]:
        if n <= 0:
            return []
        entries = await self.all()
        return list(reversed(entries[-n:]))

    async def all(self) -> List[AuditEntry]:
        entries = []
        async with aiofiles.open(self.filepath, mode='r', newline='') as f:
            async for row in AsyncDictReader(f, dialect='unix'):
                entries.append(self._from_row(row))
        return entries

    async def append(self, entry: AuditEntry, expected_previous_hash: str) -> AuditEntry:
        _check_tail(self._tail, expected_previous_hash)
        stored = replace(entry, seq=self._tail.seq + 1 if self._tail else 1)
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            writer = AsyncDictWriter(f, self.FIELDS, dialect='unix')
            await writer.writerow(self._to_row(stored))
        self._tail = stored
        return stored

    @staticmethod
    def _to_row(e: AuditEntry) -> Dict[str, str]:
        return {
            "seq": str(e.seq),
            "type": e.entry_type.value,
            "subject": e.subject,
            "amount": "" if e.amount is None else e.amount,
            "details": canonical_json(e.details),
            "region": e.region,
            "timestamp": e.timestamp,
            "previous_hash": e.previous_hash,
            "hash": e.hash,
            "signature": e.signature,
        }

    @staticmethod
    def _from_row(row: Dict[str, str]) -> AuditEntry:
        return AuditEntry(
            seq=int(row["seq"]),
            entry_type=AuditType(row["type"]),
            subject=row["subject"],
            amount=row["amount"] or None,
            details=json.loads(row["details"]),
            region=row["region"],
            timestamp=row["timestamp"],
            previous_hash=row["previous_hash"],
            hash=row["hash"],
            signature=row["signature"],
        )


def _amount_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _check_tail(current: Optional[AuditEntry], expected_previous_hash: str):
    actual = current.hash if current else GENESIS_HASH
    if actual != expected_previous_hash:
        raise ChainIntegrityError(
            f"Conditional append rejected: tail is {actual[:12]}, entry extends {expected_previous_hash[:12]}")


# --- Chain ---

class AuditChain:
    """
    Tamper-evident audit log: every entry embeds the hash of its predecessor
    and an HMAC signature of its own hash.

    Appends are funnelled through an asyncio Queue into a single writer task,
    so two concurrent callers can never both extend the same tail.
    """
    def __init__(self, store, secret: str, logger: logging.Logger, region: str = "unknown"):
        if not secret:
            raise ValueError("AuditChain requires a non-empty signing secret")
        self.store = store
        self.logger = logger
        self.region = region
        self._secret = secret
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """Opens the store and starts the background writer."""
        await self.store.open()
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def stop(self):
        """Flushes pending appends and stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def append(self, entry_type: AuditType, subject: str,
                     amount: Any = None, details: Optional[Dict[str, Any]] = None) -> AuditEntry:
        """
        Queues an entry and waits until the writer has linked, signed and persisted it.
        """
        if self._worker_task is None:
            raise RuntimeError("AuditChain.start() must be called before append()")

        draft = {
            "type": entry_type,
            "subject": subject,
            "amount": _amount_str(amount),
            # round-trip through JSON so the stored details are exactly what was hashed
            "details": json.loads(canonical_json(details or {})),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((draft, future))
        return await future

    async def _writer_worker(self):
        while True:
            draft, future = await self._queue.get()
            try:
                entry = await self._link_and_store(draft)
                if not future.done():
                    future.set_result(entry)
            except Exception as e:
                self.logger.critical(f"🚨 AUDIT APPEND FAILED ({draft['type'].value}): {e}")
                if not future.done():
                    future.set_exception(e)
            finally:
                self._queue.task_done()

    async def _link_and_store(self, draft: Dict[str, Any]) -> AuditEntry:
        last = await self.store.last()
        previous_hash = last.hash if last else GENESIS_HASH

        entry = AuditEntry(
            seq=0,
            entry_type=draft["type"],
            subject=draft["subject"],
            amount=draft["amount"],
            details=draft["details"],
            region=self.region,
            timestamp=draft["timestamp"],
            previous_hash=previous_hash,
            hash="",
            signature="",
        )
        entry_hash = digest(entry.payload())
        entry = replace(entry, hash=entry_hash, signature=sign(self._secret, entry_hash))
        return await self.store.append(entry, previous_hash)

    async def list(self, limit: int = 100) -> List[AuditEntry]:
        """Most recent entries first."""
        return await self.store.tail(limit)

    async def verify(self) -> bool:
        ok, _ = await self.check()
        return ok

    async def check(self) -> Tuple[bool, Optional[int]]:
        """
        Walks the whole chain from genesis.
        Returns (intact, seq of the first broken entry or None).
        """
        expected_previous = GENESIS_HASH
        for entry in await self.store.all():
            problem = None
            if entry.previous_hash != expected_previous:
                problem = "broken link"
            elif digest(entry.payload()) != entry.hash:
                problem = "payload does not match hash"
            elif not hmac.compare_digest(sign(self._secret, entry.hash), entry.signature):
                problem = "bad signature"

            if problem:
                self.logger.critical(f"🚨 AUDIT CHAIN BROKEN at seq {entry.seq}: {problem}")
                return False, entry.seq
            expected_previous = entry.hash
        return True, None

    async def assert_intact(self):
        ok, seq = await self.check()
        if not ok:
            raise ChainIntegrityError(f"Audit chain integrity check failed at seq {seq}")
