"""Fixed-delay polling until a remote operation settles.

One parameterized loop serves every mutating action: sleep, fetch,
test the predicate, repeat until it holds or the attempt budget runs
out.  Exhaustion is a normal result (``TIMED_OUT``), not an exception,
so callers can show a softer warning than for a hard failure.

Guarantees
----------
* Wall time is bounded by ``interval * max_attempts`` plus fetch time.
* Polls are strictly sequential; the next sleep starts after the
  previous fetch returned.
* :meth:`OperationTracker.wait_for` never raises for remote failures.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from ephemera.core.models import CommandResult, InstanceState, PowerState
from ephemera.core.protocols import RemoteClient
from ephemera.exceptions import (
    EphemeraError,
    ErrorKind,
    OperationTimeoutError,
    RemoteError,
    UnexpectedError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class Milestone(enum.Enum):
    """Coarse progress points reported to the caller."""

    START = "start"
    REACHED = "reached"
    EXECUTING = "executing"


ProgressFn = Callable[[Milestone], None]


class TrackStatus(enum.Enum):
    REACHED = "reached"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class TrackResult(Generic[T]):
    status: TrackStatus
    attempts: int
    value: T | None = None
    """Last value fetched (the settled one when ``REACHED``)."""

    error: EphemeraError | None = None

    @property
    def reached(self) -> bool:
        return self.status is TrackStatus.REACHED


@dataclass(frozen=True, slots=True)
class PollPolicy:
    """Timing and error tolerance of one tracker instantiation."""

    interval: float
    """Seconds slept before each poll."""

    max_attempts: int
    tolerated: frozenset[ErrorKind] = field(default_factory=frozenset)
    """Error kinds counted as an empty poll instead of a failure."""

    @property
    def ceiling(self) -> float:
        return self.interval * self.max_attempts


INSTANCE_STATE_POLICY = PollPolicy(
    interval=2.0,
    max_attempts=60,
    tolerated=frozenset({ErrorKind.PENDING, ErrorKind.TRANSIENT}),
)
COMMAND_RESULT_POLICY = PollPolicy(
    interval=5.0,
    max_attempts=180,
    tolerated=frozenset({ErrorKind.PENDING}),
)


class OperationTracker:
    """Polls with a fixed delay until a predicate holds."""

    def __init__(self, policy: PollPolicy, *, sleep: SleepFn = asyncio.sleep) -> None:
        self._policy = policy
        self._sleep = sleep

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    async def wait_for(
        self,
        fetch: Callable[[], Awaitable[T]],
        predicate: Callable[[T], bool],
        *,
        on_progress: ProgressFn | None = None,
    ) -> TrackResult[T]:
        """Poll *fetch* until *predicate* accepts its value."""
        policy = self._policy
        if on_progress is not None:
            on_progress(Milestone.START)

        last: T | None = None
        for attempt in range(1, policy.max_attempts + 1):
            await self._sleep(policy.interval)
            try:
                last = await fetch()
            except RemoteError as exc:
                if exc.kind in policy.tolerated:
                    LOGGER.debug("poll %d: %s (%s), continuing", attempt, exc, exc.kind.value)
                    continue
                LOGGER.warning("poll %d failed: %s", attempt, exc)
                return TrackResult(TrackStatus.FAILED, attempt, last, exc)
            except EphemeraError as exc:
                return TrackResult(TrackStatus.FAILED, attempt, last, exc)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("poll %d raised unexpectedly", attempt)
                return TrackResult(
                    TrackStatus.FAILED,
                    attempt,
                    last,
                    UnexpectedError(f"{type(exc).__name__}: {exc}"),
                )

            if predicate(last):
                if on_progress is not None:
                    on_progress(Milestone.REACHED)
                return TrackResult(TrackStatus.REACHED, attempt, last)

        LOGGER.info(
            "gave up after %d polls (%.0fs)", policy.max_attempts, policy.ceiling,
        )
        return TrackResult(
            TrackStatus.TIMED_OUT,
            policy.max_attempts,
            last,
            OperationTimeoutError(
                f"Gave up after {policy.max_attempts} polls ({policy.ceiling:.0f} seconds).",
            ),
        )


# ---------------------------------------------------------------------------
# The two instantiations used by the instance service
# ---------------------------------------------------------------------------

async def track_instance_state(
    client: RemoteClient,
    instance_id: int,
    target: PowerState,
    *,
    policy: PollPolicy = INSTANCE_STATE_POLICY,
    sleep: SleepFn = asyncio.sleep,
    on_progress: ProgressFn | None = None,
) -> TrackResult[InstanceState]:
    """Wait until *instance_id* reports *target* as its power state."""
    tracker = OperationTracker(policy, sleep=sleep)
    return await tracker.wait_for(
        lambda: client.get_instance_state(instance_id),
        lambda state: state.effective_state == target.value,
        on_progress=on_progress,
    )


async def track_command_result(
    client: RemoteClient,
    instance_id: int,
    command_uid: str,
    *,
    policy: PollPolicy = COMMAND_RESULT_POLICY,
    sleep: SleepFn = asyncio.sleep,
    on_progress: ProgressFn | None = None,
) -> TrackResult[CommandResult]:
    """Wait until the boot-script *command_uid* has produced output."""
    tracker = OperationTracker(policy, sleep=sleep)
    return await tracker.wait_for(
        lambda: client.get_command_result(instance_id, command_uid),
        lambda result: result.finished,
        on_progress=on_progress,
    )
