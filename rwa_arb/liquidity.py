# rwa_arb/liquidity.py
import asyncio
import logging
from decimal import Decimal

from .models import Route


class LiquidityProbe:
    """
    Estimates how many source tokens the bridging hub can move for a route.
    A failed read means "no liquidity", never an aborted spread check.
    """
    def __init__(self, gateway, logger: logging.Logger):
        self.gateway = gateway
        self.logger = logger

    async def estimate_liquidity(self, route: Route) -> Decimal:
        hub = self.gateway.hub_address(route.src_chain)
        if not hub:
            return Decimal(0)

        try:
            balance, decimals = await asyncio.gather(
                self.gateway.token_balance(route.src_chain, route.src_token, hub),
                self.gateway.token_decimals(route.src_chain, route.src_token),
            )
        except Exception as e:
            self.logger.warning(f"Liquidity read failed for {route.label}: {e}")
            return Decimal(0)

        return max(Decimal(balance).scaleb(-int(decimals)), Decimal(0))
