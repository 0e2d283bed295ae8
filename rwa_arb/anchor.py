# rwa_arb/anchor.py
import logging
from typing import List, Optional

from web3 import Web3

from .audit import AuditChain
from .config import AnchorSettings
from .models import AuditType


def merkle_root(entry_hashes: List[str]) -> Optional[bytes]:
    """
    Merkle root over audit entry hashes.
    Leaves are keccak256 of the hash text; each pair is sorted before hashing and
    an odd node is promoted unchanged to the next level.
    """
    if not entry_hashes:
        return None
    level = [bytes(Web3.keccak(text=h)) for h in entry_hashes]
    while len(level) > 1:
        nxt = []
        for i in range(0, len(level), 2):
            if i + 1 == len(level):
                nxt.append(level[i])
                continue
            a, b = sorted((level[i], level[i + 1]))
            nxt.append(bytes(Web3.keccak(a + b)))
        level = nxt
    return level[0]


class AuditAnchor:
    """
    Publishes a commitment to the audit chain on-chain so the log cannot be
    rewritten wholesale, even by someone holding the signing secret.
    """
    def __init__(self, gateway, audit: AuditChain, settings: AnchorSettings, logger: logging.Logger):
        self.gateway = gateway
        self.audit = audit
        self.settings = settings
        self.logger = logger

    async def anchor_latest(self) -> Optional[str]:
        """Anchors the most recent entry hash. Returns the anchor tx hash."""
        entries = await self.audit.list(1)
        if not entries:
            return None
        return await self._publish("latest", bytes.fromhex(entries[0].hash), entries)

    async def anchor_batch(self) -> Optional[str]:
        """Anchors the Merkle root of the last `batch_size` entries."""
        entries = await self.audit.list(self.settings.batch_size)
        if not entries:
            return None
        root = merkle_root([e.hash for e in entries])
        return await self._publish("merkle", root, entries)

    async def _publish(self, mode: str, digest: bytes, entries) -> str:
        receipt = await self.gateway.anchor_audit(self.settings.chain, self.settings.address, digest)
        root_hex = Web3.to_hex(digest)
        self.logger.info(f"🌳 AUDIT ANCHORED ({mode}): {root_hex} | Tx: {receipt.tx_hash}")
        await self.audit.append(AuditType.ANCHOR, self.settings.address, details={
            "mode": mode,
            "root": root_hex,
            "first_seq": entries[-1].seq,
            "last_seq": entries[0].seq,
            "tx_id": receipt.tx_hash,
            "block_number": receipt.block_number,
        })
        return receipt.tx_hash
