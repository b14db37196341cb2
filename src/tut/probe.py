"""TCP readiness probing for loopback listeners."""

import asyncio

from .common.logging import get_logger

logger = get_logger(__name__)

PROBE_INTERVAL = 0.075
ATTEMPT_TIMEOUT = 0.15


async def is_listening(
    port: int, host: str = "127.0.0.1", timeout: float = ATTEMPT_TIMEOUT
) -> bool:
    """Try one connect-and-close against host:port."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_until_listening(
    port: int,
    max_wait: float,
    host: str = "127.0.0.1",
    interval: float = PROBE_INTERVAL,
    attempt_timeout: float = ATTEMPT_TIMEOUT,
) -> bool:
    """Poll until something accepts TCP connections on host:port.

    Never blocks longer than ``max_wait`` plus one in-flight attempt.

    Args:
        port: TCP port to probe
        max_wait: Overall deadline in seconds
        host: Address to connect to
        interval: Pause between failed attempts
        attempt_timeout: Timeout of each individual connect

    Returns:
        True once a connection succeeded, False if the deadline passed
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_wait
    attempts = 0

    while True:
        attempts += 1
        if await is_listening(port, host=host, timeout=attempt_timeout):
            logger.debug("Port is listening", host=host, port=port, attempts=attempts)
            return True

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))
        if loop.time() >= deadline:
            break

    logger.debug("Port not listening", host=host, port=port, attempts=attempts)
    return False
