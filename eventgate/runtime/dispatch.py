# =============================================================================
# Dispatcher
# =============================================================================
# Invokes the consumers selected by the router.
#
# - Grants are checked synchronously; a target without a grant for the rule
#   (or source) that selected it is rejected and never invoked
# - Permitted targets are submitted to a background pool; each target's
#   outcome is captured independently, one failure never affects siblings
# - Responsibility ends at "accepted for async execution" vs "rejected"
# =============================================================================

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from eventgate.audit.sink import AuditSink, MemoryAuditSink, Outcome, Stage
from eventgate.bus.router import RouteTarget
from eventgate.runtime.envelope import Event
from eventgate.runtime.errors import ConsumerInvocationFailed, MalformedRequest, PermissionDenied

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class InvocationStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class InvocationResult:
    consumer_id: str
    status: InvocationStatus
    error: str = ""
    response: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.ACCEPTED


def _completed(result: InvocationResult) -> Future:
    future: Future = Future()
    future.set_result(result)
    return future


class Dispatcher:
    def __init__(self, audit: Optional[AuditSink] = None, max_workers: int = DEFAULT_MAX_WORKERS,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.audit = audit or MemoryAuditSink()
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def _track(self, future: Future) -> Future:
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._untrack)
        return future

    def _untrack(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _reject(self, request_id: str, consumer_id: str, error: Exception) -> InvocationResult:
        logger.warning(f"Rejected dispatch to {consumer_id}: {error}")
        self.audit.record(request_id, Stage.DISPATCH, Outcome.REJECTED,
                          consumer=consumer_id, error=str(error), errorType=type(error).__name__)
        return InvocationResult(consumer_id, InvocationStatus.REJECTED, error=str(error))

    def _invoke(self, target: RouteTarget, event: Event, request_id: str) -> InvocationResult:
        consumer = target.consumer
        try:
            ack = consumer.invoke(event)
        except ConsumerInvocationFailed as e:
            logger.error(f"Invocation of {consumer.id} failed: {e.message}")
            self.audit.record(request_id, Stage.DISPATCH, Outcome.FAILED, consumer=consumer.id,
                              error=e.message, errorType="ConsumerInvocationFailed")
            return InvocationResult(consumer.id, InvocationStatus.FAILED, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error invoking {consumer.id}: {e}")
            self.audit.record(request_id, Stage.DISPATCH, Outcome.FAILED, consumer=consumer.id,
                              error=str(e), errorType=type(e).__name__)
            return InvocationResult(consumer.id, InvocationStatus.FAILED, error=str(e))

        logger.info(f"Dispatched event {event.id} to {consumer.id} ({consumer.invoker.describe()})")
        self.audit.record(request_id, Stage.DISPATCH, Outcome.DISPATCHED, consumer=consumer.id,
                          rules=list(target.rules))
        return InvocationResult(consumer.id, InvocationStatus.ACCEPTED, response=ack)

    def submit(self, event: Event, targets: List[RouteTarget], request_id: str = "") -> List[Future]:
        """
        Check grants and submit permitted targets to the pool.

        Returns one future per target; rejected targets are already resolved.
        The caller is free to return before the futures complete.
        """
        try:
            json.dumps(event.to_dict())
        except (TypeError, ValueError) as e:
            error = MalformedRequest(f"Event is not serializable: {e}")
            return [_completed(self._reject(request_id, t.consumer.id, error)) for t in targets]

        futures: List[Future] = []
        for target in targets:
            consumer = target.consumer
            if not consumer.is_permitted(target.rules, event.source):
                error = PermissionDenied(
                    f"Consumer '{consumer.id}' has no grant for rules {list(target.rules)} "
                    f"from source '{event.source}'"
                )
                futures.append(_completed(self._reject(request_id, consumer.id, error)))
                continue
            futures.append(self._track(self._executor.submit(self._invoke, target, event, request_id)))
        return futures

    def dispatch(self, event: Event, targets: List[RouteTarget], request_id: str = "") -> List[InvocationResult]:
        """Submit and wait for every target's acceptance or rejection."""
        return [future.result() for future in self.submit(event, targets, request_id)]

    def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for submitted invocations to finish; returns how many are still pending.

        Lambda freezes the sandbox once the handler returns, so the entry
        point drains after the acknowledgement has been built.
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return 0
        _, not_done = wait(pending, timeout=timeout)
        return len(not_done)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
