"""
Bounded-concurrency fan-out with per-entity fault isolation.

Entities are processed in sequential groups of at most ``concurrency``
ids. Inside a group every remote call runs concurrently and the group
waits for all of them to settle. A failed call is logged and recorded;
it never cancels its siblings. Successful results are handed to
``on_result`` one at a time, in id order, and a failure there aborts the
run (persistence errors are not per-entity errors).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Sequence, TypeVar

import logging

logger = logging.getLogger(__name__)

K = TypeVar("K")
T = TypeVar("T")


@dataclass
class FanOutResult(Generic[K]):
    requested: int = 0
    processed: List[K] = field(default_factory=list)
    failed: Dict[K, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "requested": self.requested,
            "processed": len(self.processed),
            "failed": len(self.failed),
        }


async def fan_out(
    ids: Sequence[K],
    operation: Callable[[K], Awaitable[T]],
    on_result: Callable[[K, T], Awaitable[None]],
    concurrency: int,
    label: str = "fan_out",
) -> FanOutResult[K]:
    """
    Run ``operation`` for every id with at most ``concurrency`` in flight.

    Args:
        ids: Entity ids
        operation: Remote call per entity
        on_result: Persistence step per successful entity
        concurrency: Group size (>= 1)
        label: Prefix for log lines

    Returns:
        FanOutResult with processed ids and failed ids with reasons
    """
    concurrency = max(1, int(concurrency))
    result: FanOutResult[K] = FanOutResult(requested=len(ids))

    for start in range(0, len(ids), concurrency):
        group = list(ids[start:start + concurrency])
        outcomes = await asyncio.gather(
            *(operation(entity_id) for entity_id in group),
            return_exceptions=True,
        )

        for entity_id, outcome in zip(group, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                result.failed[entity_id] = f"{type(outcome).__name__}: {outcome}"
                logger.warning(f"[{label}] {entity_id} failed: {outcome}")
                continue

            await on_result(entity_id, outcome)
            result.processed.append(entity_id)

    logger.info(
        f"[{label}] {len(result.processed)}/{result.requested} processed, "
        f"{len(result.failed)} failed"
    )
    return result
