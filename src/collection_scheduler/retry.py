import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryPolicy(BaseModel):
    """
    Bounded exponential backoff: attempt ``n`` (1-based) waits ``base_delay * multiplier ** (n - 1)`` seconds.
    """
    max_retries: int = Field(3, ge=0, description="Retries after the first attempt")
    base_delay: float = Field(2.0, ge=0, description="Delay in seconds before the first retry")
    multiplier: float = Field(2.0, ge=1, description="Growth factor applied per retry")

    model_config = {"frozen": True}

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry: int) -> float:
        return self.base_delay * self.multiplier ** (retry - 1)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Call ``func`` until it succeeds or the policy's retries are used up.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised once retries run out.
    """
    retry = 0
    while True:
        try:
            return await func()
        except retry_on as e:
            if retry >= policy.max_retries:
                logger.error("%s failed after %d attempts: %s", description, retry + 1, e)
                raise
            retry += 1
            delay = policy.delay_for(retry)
            logger.warning("%s failed (%s), retry %d/%d in %.1fs", description, e, retry, policy.max_retries, delay)
            await sleep(delay)
