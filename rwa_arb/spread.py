# rwa_arb/spread.py
import asyncio
import logging
import time
from decimal import Decimal
from typing import Union

from .liquidity import LiquidityProbe
from .models import Route, SpreadResult
from .oracle import PriceOracleClient

Number = Union[Decimal, float, int]


def compute_spread_bps(src_price: Number, dest_price: Number) -> float:
    """
    Forward spread of a directional route in basis points.
    Reverse opportunities are never reported here; they belong to the mirrored route.
    """
    src = Decimal(str(src_price))
    dest = Decimal(str(dest_price))
    if src <= 0 or dest <= src:
        return 0.0
    return float((dest - src) / src * 10000)


class SpreadEvaluator:
    """
    Combines both oracle readings and the liquidity probe into one SpreadResult.
    A result exists only when both readings succeed.
    """
    def __init__(self, oracle: PriceOracleClient, liquidity: LiquidityProbe, logger: logging.Logger):
        self.oracle = oracle
        self.liquidity = liquidity
        self.logger = logger

    async def evaluate(self, route: Route) -> SpreadResult:
        src, dest = await asyncio.gather(
            self.oracle.fetch_price(route.src_chain, route.src_feed),
            self.oracle.fetch_price(route.dest_chain, route.dest_feed),
        )
        spread_bps = compute_spread_bps(src.price, dest.price)

        tokens = await self.liquidity.estimate_liquidity(route)

        return SpreadResult(
            route=route,
            src=src,
            dest=dest,
            spread_bps=spread_bps,
            available_liquidity=tokens * src.price,
            liquidity_tokens=tokens,
            timestamp=time.time(),
        )
