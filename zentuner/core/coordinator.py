"""
Analysis coordinator.

Runs the spectral estimators on one background thread. Callers submit
typed requests and get a concurrent.futures.Future back; every request
carries a unique id, and the worker answers with a response record that
resolves or rejects exactly the matching future.
"""

import itertools
import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from zentuner.core import estimator
from zentuner.utils.errors import AnalysisError, InvalidStateError

logger = logging.getLogger('coordinator')


class RequestKind(str, Enum):
    DETECT_TUNING = "DETECT_TUNING"
    DETECT_BASS = "DETECT_BASS"
    DETECT_PHASE = "DETECT_PHASE"
    DETECT_HIRES = "DETECT_HIRES"


@dataclass(frozen=True)
class AnalysisRequest:
    id: int
    kind: RequestKind
    payload: Dict[str, Any]


@dataclass(frozen=True)
class AnalysisResponse:
    id: int
    success: bool
    result: Any = None
    error: Optional[str] = None


def _run_tuning(payload: Dict[str, Any]) -> float:
    return estimator.detect_reference_pitch(
        payload['data'], payload['sample_rate'], payload.get('sensitivity', 50)
    )


def _run_bass(payload: Dict[str, Any]) -> float:
    return estimator.detect_bass_root(
        payload['data'], payload['sample_rate'], payload.get('sensitivity', 50)
    )


def _run_phase(payload: Dict[str, Any]) -> float:
    return estimator.detect_phase_offset(
        payload['data'], payload['sample_rate'], payload['frequency']
    )


def _run_hires(payload: Dict[str, Any]) -> bool:
    return estimator.detect_high_frequency_content(payload['data'], payload['sample_rate'])


DEFAULT_HANDLERS: Dict[RequestKind, Callable[[Dict[str, Any]], Any]] = {
    RequestKind.DETECT_TUNING: _run_tuning,
    RequestKind.DETECT_BASS: _run_bass,
    RequestKind.DETECT_PHASE: _run_phase,
    RequestKind.DETECT_HIRES: _run_hires,
}

_STOP = object()


class AnalysisCoordinator:
    """
    Owns the analysis worker thread.

    Example:
        with AnalysisCoordinator() as coordinator:
            future = coordinator.submit("DETECT_TUNING", {"data": x, "sample_rate": 44100})
            reference = future.result()
    """

    def __init__(self, handlers: Optional[Dict[RequestKind, Callable[[Dict[str, Any]], Any]]] = None):
        self._handlers = dict(handlers or DEFAULT_HANDLERS)
        self._requests: "queue.Queue[Any]" = queue.Queue()
        self._pending: Dict[int, Future] = {}
        self._pending_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False
        self._thread = threading.Thread(
            target=self._worker_loop, name="analysis-worker", daemon=True
        )
        self._thread.start()
        logger.debug("Analysis worker started")

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def submit(self, kind: Any, payload: Dict[str, Any]) -> Future:
        """
        Queue an analysis request.

        Args:
            kind: A RequestKind or its string value
            payload: Request arguments (``data``, ``sample_rate``, ...)

        Returns:
            Future: Resolves with the estimator result, or raises AnalysisError
        """
        future: Future = Future()
        try:
            kind = RequestKind(kind)
        except ValueError:
            future.set_exception(AnalysisError(f"Unknown request kind: {kind}", request_kind=str(kind)))
            return future

        with self._pending_lock:
            if self._closed:
                future.set_exception(
                    InvalidStateError("Analysis coordinator is shut down", state="closed")
                )
                return future
            request_id = next(self._ids)
            self._pending[request_id] = future
        self._requests.put(AnalysisRequest(request_id, kind, payload))
        return future

    def _worker_loop(self) -> None:
        while True:
            request = self._requests.get()
            if request is _STOP:
                break
            self._complete(self._handle(request))

    def _handle(self, request: AnalysisRequest) -> AnalysisResponse:
        handler = self._handlers.get(request.kind)
        if handler is None:
            return AnalysisResponse(request.id, False, error=f"No handler for {request.kind.value}")
        try:
            return AnalysisResponse(request.id, True, result=handler(request.payload))
        except Exception as e:
            logger.warning(f"{request.kind.value} request {request.id} failed: {e}")
            return AnalysisResponse(request.id, False, error=str(e))

    def _complete(self, response: AnalysisResponse) -> None:
        with self._pending_lock:
            future = self._pending.pop(response.id, None)
        if future is None:
            return
        if response.success:
            future.set_result(response.result)
        else:
            future.set_exception(AnalysisError(response.error or "Analysis failed"))

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker once it drains the queue; anything left unanswered is rejected."""
        with self._pending_lock:
            if self._closed:
                return
            self._closed = True
        self._requests.put(_STOP)
        if wait:
            self._thread.join()

        with self._pending_lock:
            leftovers = list(self._pending.values())
            self._pending.clear()
        for future in leftovers:
            future.set_exception(InvalidStateError("Analysis coordinator is shut down", state="closed"))
        logger.debug("Analysis worker stopped")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
