"""Ordered failover across interchangeable upstream mirrors."""

from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def _label(func: Callable[..., Any]) -> str:
    return getattr(func, "__name__", None) or repr(func)


class FallbackChain(Generic[T]):
    """Call each mirror in turn with the same arguments; first success wins.

    The POI crawler builds one chain per run, one function per mirror.
    After ``execute`` returns or raises, ``failures`` lists the mirrors that
    failed (label, error) and ``served_by`` names the one that answered.
    """

    def __init__(self, *mirrors: Callable[..., Awaitable[T]]):
        if not mirrors:
            raise ValueError("FallbackChain needs at least one function")
        self.mirrors = mirrors
        self.failures: list[tuple[str, str]] = []
        self.served_by: Optional[str] = None

    async def execute(self, *args: Any, **kwargs: Any) -> T:
        """Return the first mirror's result that does not raise.

        Raises:
            The last mirror's exception when every mirror fails
        """
        self.failures = []
        self.served_by = None
        error: Optional[Exception] = None

        for position, mirror in enumerate(self.mirrors, start=1):
            name = _label(mirror)
            try:
                result = await mirror(*args, **kwargs)
            except Exception as e:
                error = e
                self.failures.append((name, str(e)))
                logger.warning("mirror_failed", mirror=name, position=position, error=str(e))
                continue

            self.served_by = name
            if self.failures:
                logger.info("mirror_failover", mirror=name, skipped=[n for n, _ in self.failures])
            return result

        logger.error("mirrors_exhausted", mirrors=[n for n, _ in self.failures], final_error=str(error))
        raise error  # type: ignore[misc]
