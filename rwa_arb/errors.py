# rwa_arb/errors.py


class ArbError(Exception):
    """Base class for every error raised by the monitor."""


class ConfigError(ArbError):
    """Invalid or incomplete configuration. Fatal at startup."""


class UnknownChainError(ArbError):
    pass


# --- Oracle layer ---

class OracleError(ArbError):
    def __init__(self, chain: str, feed: str, message: str):
        self.chain = chain
        self.feed = feed
        super().__init__(f"{message} on {chain}/{feed}")


class StaleDataError(OracleError):
    def __init__(self, chain: str, feed: str, age: float):
        self.age = age
        super().__init__(chain, feed, f"Stale price ({age:.0f}s old)")


class StaleRoundError(OracleError):
    def __init__(self, chain: str, feed: str, round_id: int, answered_in_round: int):
        self.round_id = round_id
        self.answered_in_round = answered_in_round
        super().__init__(chain, feed, f"Stale round (answered {answered_in_round} < latest {round_id})")


class InvalidPriceError(OracleError):
    def __init__(self, chain: str, feed: str, answer: int):
        self.answer = answer
        super().__init__(chain, feed, f"Invalid price ({answer})")


# --- Bridge layer ---

class BridgeError(ArbError):
    pass


class SpreadInvalidatedError(BridgeError):
    def __init__(self, onchain_bps: int, threshold_bps: float):
        self.onchain_bps = onchain_bps
        self.threshold_bps = threshold_bps
        super().__init__(f"On-chain spread {onchain_bps} bps fell below threshold {threshold_bps} bps")


class InsufficientLiquidityError(BridgeError):
    pass


class InsufficientAllowanceError(BridgeError):
    """Raised internally when an approval is required; never surfaces to callers."""

    def __init__(self, current: int, required: int):
        self.current = current
        self.required = required
        super().__init__(f"Allowance {current} < required {required}")


class TransactionFailedError(BridgeError):
    def __init__(self, message: str, tx_hash: str = None):
        self.tx_hash = tx_hash
        super().__init__(message if tx_hash is None else f"{message} (tx {tx_hash})")


# --- Audit ---

class ChainIntegrityError(ArbError):
    """The audit hash chain is broken. Operators must investigate; never ignore."""
