"""
Consistency coordinator for updates that touch more than one record.

The store only guarantees atomicity per record, so a follow (two User
records) or a resource submission (Resource, Topic and User records) is
applied as an ordered list of steps. Each step must be idempotent: re-running
an already applied step leaves the record unchanged.

Policy:
    - preconditions run first; any failure there mutates nothing (REJECTED)
    - steps run in the given order; transient store errors are retried
      in-process with exponential backoff
    - if a later step still fails with a retryable error, the result is
      PARTIAL and the caller reports failed-but-retryable; re-invoking the
      same operation completes the pending steps without duplicating the
      applied ones
    - if a later step fails with a non-retryable error (its record vanished),
      the applied steps that actually changed their record are undone in
      reverse order; steps that found their record already in the target
      state are left alone
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from errors import PartialUpdateError, SocialGraphError

logger = logging.getLogger(__name__)


class Outcome(Enum):
    APPLIED = "applied"      # every step applied
    PARTIAL = "partial"      # some steps applied, retry to converge
    REJECTED = "rejected"    # precondition failed or nothing applied


@dataclass
class Step:
    """One single-record mutation.

    Attributes:
        name: Label used in results and logs (e.g. "actor.followedUsers")
        apply: Performs the mutation and returns the updated record
        undo: Reverts the mutation; used only when a later step cannot succeed
    """
    name: str
    apply: Callable[[], Any]
    undo: Optional[Callable[[], Any]] = None


@dataclass
class Applied:
    """Step result that says whether the record was actually modified.

    Steps returning anything else are treated as having changed their record.
    """
    record: Any
    changed: bool = True


@dataclass
class CoordinatedResult:
    operation: str
    outcome: Outcome
    applied: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    records: Dict[str, Any] = field(default_factory=dict)
    error: Optional[SocialGraphError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.APPLIED


class ConsistencyCoordinator:
    def __init__(self, max_attempts: int = 3, backoff_seconds: float = 0.05,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _attempt(self, operation: str, step: Step) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return step.apply()
            except SocialGraphError as e:
                if not e.retryable or attempt == self.max_attempts:
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning("%s: step %s failed (attempt %d/%d), retrying in %.2fs: %s",
                               operation, step.name, attempt, self.max_attempts, delay, e)
                self._sleep(delay)

    def _compensate(self, operation: str, steps: List[Tuple[Step, bool]]) -> bool:
        restored = True
        for step, changed in reversed(steps):
            if not changed:
                logger.debug("%s: %s made no change, nothing to undo", operation, step.name)
                continue
            if step.undo is None:
                restored = False
                continue
            try:
                step.undo()
            except SocialGraphError as e:
                logger.error("%s: undo of %s failed: %s", operation, step.name, e)
                restored = False
        return restored

    def run(self, operation: str, steps: Iterable[Step],
            preconditions: Iterable[Callable[[], Any]] = ()) -> CoordinatedResult:
        steps = list(steps)
        result = CoordinatedResult(operation, Outcome.APPLIED, pending=[s.name for s in steps])

        try:
            for check in preconditions:
                check()
        except SocialGraphError as e:
            logger.info("%s rejected: %s", operation, e)
            result.outcome = Outcome.REJECTED
            result.error = e
            return result

        done: List[Tuple[Step, bool]] = []
        for step in steps:
            try:
                value = self._attempt(operation, step)
            except SocialGraphError as e:
                result.error = e
                if not done:
                    result.outcome = Outcome.REJECTED
                elif e.retryable:
                    result.outcome = Outcome.PARTIAL
                    logger.warning("%s partially applied (applied=%s, pending=%s): %s",
                                   operation, result.applied, result.pending, e)
                elif self._compensate(operation, done):
                    result.outcome = Outcome.REJECTED
                    result.applied = []
                    result.pending = [s.name for s in steps]
                    logger.warning("%s rolled back after %s failed: %s", operation, step.name, e)
                else:
                    result.outcome = Outcome.PARTIAL
                    logger.error("%s could not be rolled back (applied=%s): %s",
                                 operation, result.applied, e)
                return result
            if isinstance(value, Applied):
                result.records[step.name] = value.record
                done.append((step, value.changed))
            else:
                result.records[step.name] = value
                done.append((step, True))
            result.applied.append(step.name)
            result.pending.remove(step.name)

        logger.debug("%s applied: %s", operation, result.applied)
        return result

    def execute(self, operation: str, steps: Iterable[Step],
                preconditions: Iterable[Callable[[], Any]] = ()) -> Dict[str, Any]:
        """Run `steps` and return the updated records keyed by step name.

        Raises:
            PartialUpdateError: some steps applied; safe to retry
            SocialGraphError: the precondition or first-step error when nothing applied
        """
        result = self.run(operation, steps, preconditions)
        if result.outcome is Outcome.PARTIAL:
            raise PartialUpdateError(f"{operation} partially applied, retry to complete", result)
        if result.outcome is Outcome.REJECTED:
            raise result.error
        return result.records
