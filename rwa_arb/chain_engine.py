# rwa_arb/chain_engine.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, Web3Exception

from .config import ChainConfig
from .errors import TransactionFailedError, UnknownChainError


def _abi(name: str, inputs, outputs, mutability: str = "view") -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


# Chainlink AggregatorV3Interface (subset)
FEED_ABI = [
    _abi("latestRoundData", [], [
        ("roundId", "uint80"), ("answer", "int256"), ("startedAt", "uint256"),
        ("updatedAt", "uint256"), ("answeredInRound", "uint80"),
    ]),
    _abi("decimals", [], [("", "uint8")]),
]

ERC20_ABI = [
    _abi("balanceOf", [("account", "address")], [("", "uint256")]),
    _abi("decimals", [], [("", "uint8")]),
    _abi("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    _abi("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")], "nonpayable"),
]

HUB_ABI = [
    _abi("getBridgeQuote", [("tokenIn", "address"), ("amountIn", "uint256"), ("destChainSelector", "uint64")],
         [("spreadBps", "uint256"), ("protocolFee", "uint256"), ("ccipFee", "uint256")]),
    _abi("bridgeAndSwap", [("tokenIn", "address"), ("amountIn", "uint256"), ("destChainSelector", "uint64"),
                           ("receiver", "address"), ("linkFeeAmount", "uint256")],
         [("", "bytes32")], "payable"),
    _abi("protocolFeeBps", [], [("", "uint256")]),
]

ANCHOR_ABI = [
    _abi("anchorAudit", [("auditHash", "bytes32")], [], "nonpayable"),
]


@dataclass(frozen=True, slots=True)
class TxReceipt:
    tx_hash: str
    block_number: int


class ChainGateway:
    """
    Owns one AsyncWeb3 connection per configured chain and the signing account.
    Every contract read and write in the monitor goes through here, bounded by
    `rpc_timeout` so a hung endpoint can never stall a tick.
    """
    def __init__(self, chains: Dict[str, ChainConfig], logger: logging.Logger,
                 private_key: Optional[str] = None, rpc_timeout: float = 10.0,
                 receipt_timeout: float = 120.0):
        self.chains = chains
        self.logger = logger
        self.rpc_timeout = rpc_timeout
        self.receipt_timeout = receipt_timeout
        self.clients: Dict[str, AsyncWeb3] = {}
        self._account = Account.from_key(private_key) if private_key else None

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def initialize(self) -> bool:
        """
        Connects to every chain and checks the endpoint reports the expected chain id.
        Returns False if ANY chain fails the diagnostic.
        """
        all_connected = True
        self.logger.info("📡 TESTING RPC CONNECTIONS...")

        for name, cfg in self.chains.items():
            client = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                cfg.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
            try:
                if not await asyncio.wait_for(client.is_connected(), self.rpc_timeout):
                    self.logger.error(f"   ❌ {name.upper():<10} | UNREACHABLE: {cfg.rpc_url}")
                    all_connected = False
                    continue
                chain_id = await asyncio.wait_for(client.eth.chain_id, self.rpc_timeout)
                if cfg.chain_id and chain_id != cfg.chain_id:
                    self.logger.critical(
                        f"   ❌ {name.upper():<10} | WRONG NETWORK: expected {cfg.chain_id}, got {chain_id}")
                    all_connected = False
                    continue
                block = await asyncio.wait_for(client.eth.block_number, self.rpc_timeout)
                self.clients[name] = client
                self.logger.info(f"   ✅ {name.upper():<10} | Chain ID: {chain_id} | Block: {block}")
            except asyncio.TimeoutError:
                self.logger.error(f"   ❌ {name.upper():<10} | TIMEOUT: RPC endpoint is slow or down.")
                all_connected = False
            except (Web3Exception, OSError) as e:
                self.logger.error(f"   ❌ {name.upper():<10} | RPC ERROR: {e}")
                all_connected = False

        return all_connected

    def _client(self, chain: str) -> AsyncWeb3:
        client = self.clients.get(chain)
        if client is None:
            raise UnknownChainError(f"No connected RPC client for chain: {chain}")
        return client

    def _contract(self, chain: str, address: str, abi):
        return self._client(chain).eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def _call(self, fn):
        return await asyncio.wait_for(fn.call(), self.rpc_timeout)

    # --- Reads ---

    async def latest_round_data(self, chain: str, feed: str) -> Tuple[int, int, int, int, int]:
        return tuple(await self._call(self._contract(chain, feed, FEED_ABI).functions.latestRoundData()))

    async def feed_decimals(self, chain: str, feed: str) -> int:
        return await self._call(self._contract(chain, feed, FEED_ABI).functions.decimals())

    async def token_balance(self, chain: str, token: str, holder: str) -> int:
        fn = self._contract(chain, token, ERC20_ABI).functions.balanceOf(Web3.to_checksum_address(holder))
        return await self._call(fn)

    async def token_decimals(self, chain: str, token: str) -> int:
        return await self._call(self._contract(chain, token, ERC20_ABI).functions.decimals())

    async def allowance(self, chain: str, token: str, spender: str) -> int:
        # keyless dry run: no owner, so nothing is approved yet
        if self.signer_address is None:
            return 0
        fn = self._contract(chain, token, ERC20_ABI).functions.allowance(
            self.signer_address, Web3.to_checksum_address(spender))
        return await self._call(fn)

    def hub_address(self, chain: str) -> Optional[str]:
        cfg = self.chains.get(chain)
        return cfg.bridge_hub if cfg else None

    async def bridge_quote(self, chain: str, token: str, amount: int, selector: int) -> Tuple[int, int, int]:
        hub = self._contract(chain, self._require_hub(chain), HUB_ABI)
        fn = hub.functions.getBridgeQuote(Web3.to_checksum_address(token), amount, selector)
        return tuple(await self._call(fn))

    # --- Writes ---

    async def approve(self, chain: str, token: str, spender: str, amount: int) -> TxReceipt:
        fn = self._contract(chain, token, ERC20_ABI).functions.approve(Web3.to_checksum_address(spender), amount)
        return await self._transact(chain, fn)

    async def bridge_and_swap(self, chain: str, token: str, amount: int, selector: int,
                              receiver: str, link_fee: int, value: int) -> TxReceipt:
        hub = self._contract(chain, self._require_hub(chain), HUB_ABI)
        fn = hub.functions.bridgeAndSwap(Web3.to_checksum_address(token), amount, selector,
                                         Web3.to_checksum_address(receiver), link_fee)
        return await self._transact(chain, fn, value=value)

    async def anchor_audit(self, chain: str, anchor_address: str, digest: bytes) -> TxReceipt:
        fn = self._contract(chain, anchor_address, ANCHOR_ABI).functions.anchorAudit(digest)
        return await self._transact(chain, fn)

    def _require_hub(self, chain: str) -> str:
        hub = self.hub_address(chain)
        if not hub:
            raise UnknownChainError(f"No bridge hub configured for chain: {chain}")
        return hub

    async def _transact(self, chain: str, fn, value: int = 0) -> TxReceipt:
        """
        Builds, signs and sends a transaction, then waits for its receipt.
        Any failure along the way surfaces as TransactionFailedError.
        """
        if self._account is None:
            raise TransactionFailedError("No signing key configured")

        w3 = self._client(chain)
        tx_hash = None
        try:
            nonce = await asyncio.wait_for(
                w3.eth.get_transaction_count(self.signer_address, "pending"), self.rpc_timeout)
            tx = await asyncio.wait_for(fn.build_transaction({
                "from": self.signer_address,
                "nonce": nonce,
                "value": value,
                "chainId": self.chains[chain].chain_id,
            }), self.rpc_timeout)
            signed = self._account.sign_transaction(tx)
            raw_hash = await asyncio.wait_for(w3.eth.send_raw_transaction(signed.raw_transaction), self.rpc_timeout)
            tx_hash = Web3.to_hex(raw_hash)
            self.logger.info(f"📤 TX SENT on {chain}: {tx_hash}")
            receipt = await w3.eth.wait_for_transaction_receipt(raw_hash, timeout=self.receipt_timeout)
        except asyncio.TimeoutError as e:
            raise TransactionFailedError(f"RPC timeout on {chain}", tx_hash) from e
        except TimeExhausted as e:
            raise TransactionFailedError(f"No receipt within {self.receipt_timeout:.0f}s on {chain}", tx_hash) from e
        except (Web3Exception, ValueError) as e:
            raise TransactionFailedError(f"Transaction error on {chain}: {e}", tx_hash) from e

        if receipt["status"] != 1:
            raise TransactionFailedError(f"Transaction reverted on {chain}", tx_hash)
        return TxReceipt(tx_hash=tx_hash, block_number=receipt["blockNumber"])

    async def shutdown(self):
        for client in self.clients.values():
            await client.provider.disconnect()
        self.clients.clear()
