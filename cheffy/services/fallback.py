"""Ordered fallback chains.

Every call site that needs graceful degradation (generation models, catalog
sources) describes its options as an ordered list of :class:`Attempt` objects
and lets :class:`FallbackChain` walk them. The chain stops at the first attempt
that returns a value accepted by the validator and always hands back a
:class:`FallbackResult`, so callers decide for themselves whether "all failed"
is fatal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Attempt(Generic[T]):
    name: str
    call: Callable[[], Awaitable[T]]
    timeout: Optional[float] = None


@dataclass
class AttemptFailure:
    name: str
    reason: str
    error_type: str

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "reason": self.reason, "errorType": self.error_type}


@dataclass
class FallbackResult(Generic[T]):
    value: Optional[T] = None
    source: Optional[str] = None
    failures: List[AttemptFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.source is not None

    def failure_details(self) -> List[Dict[str, Any]]:
        return [failure.as_dict() for failure in self.failures]


class FallbackChain(Generic[T]):
    def __init__(
        self,
        attempts: Sequence[Attempt[T]],
        *,
        label: str,
        max_attempts: Optional[int] = None,
    ) -> None:
        if not attempts:
            raise ValueError(f"{label}: fallback chain needs at least one attempt")
        limit = max_attempts if max_attempts is not None else len(attempts)
        self.attempts = list(attempts)[:limit]
        self.label = label

    async def run(self, validate: Optional[Callable[[T], T]] = None) -> FallbackResult[T]:
        result: FallbackResult[T] = FallbackResult()
        for attempt in self.attempts:
            try:
                if attempt.timeout is not None:
                    value = await asyncio.wait_for(attempt.call(), timeout=attempt.timeout)
                else:
                    value = await attempt.call()
                if validate is not None:
                    value = validate(value)
            except asyncio.TimeoutError:
                reason = f"timed out after {attempt.timeout}s"
                logger.warning("%s: attempt %s %s", self.label, attempt.name, reason)
                result.failures.append(AttemptFailure(attempt.name, reason, "TimeoutError"))
                continue
            except Exception as exc:
                logger.warning("%s: attempt %s failed: %s", self.label, attempt.name, exc)
                result.failures.append(AttemptFailure(attempt.name, str(exc) or type(exc).__name__, type(exc).__name__))
                continue
            if result.failures:
                logger.info(
                    "%s: recovered with %s after %d failed attempt(s)",
                    self.label,
                    attempt.name,
                    len(result.failures),
                )
            result.value = value
            result.source = attempt.name
            return result
        return result
