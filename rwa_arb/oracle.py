# rwa_arb/oracle.py
import asyncio
import logging
import time
from decimal import Decimal
from typing import Callable

from .errors import InvalidPriceError, StaleDataError, StaleRoundError
from .models import PriceReading

MAX_PRICE_AGE_SECONDS = 3600


class PriceOracleClient:
    """
    Reads Chainlink-style price feeds and rejects answers that should not be traded on.
    No retries here: the monitor re-polls on its next tick.
    """
    def __init__(self, gateway, logger: logging.Logger,
                 max_age: int = MAX_PRICE_AGE_SECONDS, clock: Callable[[], float] = time.time):
        self.gateway = gateway
        self.logger = logger
        self.max_age = max_age
        self.clock = clock

    async def fetch_price(self, chain: str, feed: str) -> PriceReading:
        round_data, decimals = await asyncio.gather(
            self.gateway.latest_round_data(chain, feed),
            self.gateway.feed_decimals(chain, feed),
        )
        round_id, answer, _started_at, updated_at, answered_in_round = round_data

        now = self.clock()
        age = int(now) - int(updated_at)
        if age > self.max_age:
            raise StaleDataError(chain, feed, age)

        if answered_in_round < round_id:
            raise StaleRoundError(chain, feed, round_id, answered_in_round)

        if answer <= 0:
            raise InvalidPriceError(chain, feed, answer)

        price = Decimal(answer).scaleb(-int(decimals))
        self.logger.debug(f"{chain}/{feed}: ${price} (round {round_id}, {age}s old)")

        return PriceReading(
            chain=chain,
            feed=feed,
            price=price,
            updated_at=int(updated_at),
            round_id=round_id,
            answered_in_round=answered_in_round,
            decimals=int(decimals),
            observed_at=now,
        )
