"""Per-key call de-duplication for leaderboard recomputation."""

from __future__ import annotations

import threading
from concurrent.futures import Executor
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class _Call:
    __slots__ = ("done", "result", "error", "waiters")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.waiters = 0


class SingleFlight:
    """Run at most one ``fn`` per key; concurrent callers share its outcome.

    Locking is scoped to the key, so unrelated leaderboards compute in
    parallel. Exceptions raised by the leader are re-raised in every waiter.

    With an ``executor`` and a ``timeout``, the leader's ``fn`` runs on the
    executor and every caller, the leader included, waits at most ``timeout``
    seconds before ``TimeoutError``. The call keeps running in the
    background, and the key stays in flight until it finishes.
    """

    def __init__(self, executor: Optional[Executor] = None) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[Hashable, _Call] = {}
        self._executor = executor

    def do(self, key: Hashable, fn: Callable[[], Any], timeout: Optional[float] = None) -> Tuple[Any, bool]:
        """Return ``(result, shared)``; ``shared`` is True for callers that waited."""

        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.waiters += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if leader:
            if timeout is None or self._executor is None:
                self._run(key, call, fn)
            else:
                self._executor.submit(self._run, key, call, fn)

        if not call.done.wait(timeout):
            raise TimeoutError(f"{key!r} still computing after {timeout}s")
        if call.error is not None:
            raise call.error
        return call.result, not leader

    def _run(self, key: Hashable, call: _Call, fn: Callable[[], Any]) -> None:
        try:
            call.result = fn()
        except BaseException as exc:
            call.error = exc
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._calls
