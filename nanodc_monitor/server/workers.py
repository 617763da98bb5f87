"""Background refresh lifecycle and display state.

The RefreshController owns one periodic fetch loop per selected site. The
DisplayState subscribes to its cycle results and keeps the resolved slot list
that presentation reads.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..collectors.base import BaseCollector, FetchCancelled, FetchError
from ..data.board import resolve_layout
from ..data.mapping import MappingRegistry, SlotMapper
from ..data.models import CycleResult, EntityCatalog, FailureKind, ResolvedSlot, SlotDescriptor
from ..data.persistence import DataStore


def _log(msg: str) -> None:
    """Print with flush for reliable output in daemon threads."""
    print(msg, flush=True)


class ControllerState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class AlreadyRunning(RuntimeError):
    """Raised when start() is called for a new site without stopping the old one."""

    def __init__(self, active_site: str, requested_site: str):
        self.active_site = active_site
        self.requested_site = requested_site
        super().__init__(
            f"Refresh already running for {active_site!r}; stop it before starting {requested_site!r}"
        )


@dataclass
class RefreshSession:
    """Live state of one controller run."""

    site_id: str
    generation: int
    cycle: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    worker: Optional["RefreshWorker"] = None


class RefreshWorker(threading.Thread):
    """Background worker running the fetch loop of one session."""

    daemon = True

    def __init__(self, controller: "RefreshController", session: RefreshSession):
        super().__init__(name=f"refresh-{session.site_id}-{session.generation}")
        self.controller = controller
        self.session = session

    def run(self) -> None:
        session = self.session
        interval = self.controller.interval
        _log(f"[refresh] Starting {session.site_id} (interval={interval}s, generation={session.generation})")

        while not session.cancel_event.is_set():
            self.controller._run_cycle(session)
            # The interval counts from the end of the cycle, so slow fetches never overlap
            if session.cancel_event.wait(interval):
                break

        _log(f"[refresh] Stopped {session.site_id} after {session.cycle} cycle(s)")


CycleCallback = Callable[[CycleResult], None]
StateCallback = Callable[[ControllerState, Optional[str]], None]


class RefreshController:
    """Periodic fetch lifecycle for exactly one active site at a time.

    ``start``, ``stop`` and ``change_site`` are serialized by a control lock.
    Every session carries a generation number; a cycle result is delivered
    only while its generation is current, so nothing from a stopped session
    reaches subscribers once ``stop`` has returned.

    Subscriber callbacks run on the worker thread and must not call
    ``stop`` or ``change_site`` themselves.
    """

    def __init__(
        self,
        collector: BaseCollector,
        *,
        interval: float = 20.0,
        quiescence_delay: float = 0.1,
        stop_timeout: float = 5.0,
    ):
        self.collector = collector
        self.interval = interval
        self.quiescence_delay = quiescence_delay
        self.stop_timeout = stop_timeout
        self._control_lock = threading.Lock()
        self._delivery_lock = threading.RLock()
        self._session: Optional[RefreshSession] = None
        self._state = ControllerState.IDLE
        self._generation = 0
        self._subscribers: List[CycleCallback] = []
        self._state_listeners: List[StateCallback] = []
        self._consecutive_failures = 0
        self._last_result: Optional[CycleResult] = None
        # Workers that outlived stop_timeout; their fetch may still be in flight
        self._abandoned: List["RefreshWorker"] = []

    # --- Properties ---

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def site_id(self) -> Optional[str]:
        session = self._session
        return session.site_id if session else None

    @property
    def generation(self) -> int:
        return self._generation

    def is_running(self) -> bool:
        return self._session is not None

    # --- Subscriptions ---

    def subscribe(self, callback: CycleCallback) -> Callable[[], None]:
        """Register a cycle-result callback.

        Returns:
            A function that removes the subscription.
        """
        with self._delivery_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._delivery_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def on_state_change(self, callback: StateCallback) -> None:
        with self._delivery_lock:
            self._state_listeners.append(callback)

    # --- Lifecycle ---

    def start(self, site_id: str) -> None:
        """Start refreshing a site.

        Raises:
            AlreadyRunning: If a session for a different site is active.
        """
        with self._control_lock:
            self._start_locked(site_id)

    def stop(self) -> None:
        """Stop the active session and wait for its worker to end.

        The wait is bounded by ``stop_timeout``. A worker still blocked in a
        fetch after that is abandoned: the controller returns to IDLE anyway,
        the worker's result is discarded by the generation check, and it is
        counted in ``get_status()["abandoned_workers"]`` until it exits. A
        session started right after such a stop may therefore briefly share
        the network with the abandoned fetch.
        """
        with self._control_lock:
            self._stop_locked()

    def change_site(self, site_id: str) -> None:
        """Stop the current session (if any) and start one for ``site_id``."""
        with self._control_lock:
            _log(f"[refresh] Changing site {self.site_id!r} -> {site_id!r}")
            self._stop_locked()
            if self.quiescence_delay > 0:
                time.sleep(self.quiescence_delay)
            self._start_locked(site_id)

    def restart(self) -> bool:
        """Restart the current site so a fetch happens immediately.

        Returns:
            False if no session was active.
        """
        with self._control_lock:
            session = self._session
            if session is None:
                return False
            self._stop_locked()
            self._start_locked(session.site_id)
            return True

    def _start_locked(self, site_id: str) -> None:
        session = self._session
        if session is not None:
            if session.site_id == site_id:
                _log(f"[refresh] Already running {site_id}; start ignored")
                return
            raise AlreadyRunning(session.site_id, site_id)

        with self._delivery_lock:
            self._generation += 1
            session = RefreshSession(site_id=site_id, generation=self._generation)
            self._session = session
            self._consecutive_failures = 0
            self._last_result = None
            self._set_state(ControllerState.STARTING)

        session.worker = RefreshWorker(self, session)
        session.worker.start()

    def _stop_locked(self) -> None:
        session = self._session
        if session is None:
            return

        with self._delivery_lock:
            self._set_state(ControllerState.STOPPING)
            # Invalidate before signalling so a late result can never be delivered
            self._generation += 1
            session.cancel_event.set()

        worker = session.worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=self.stop_timeout)
            if worker.is_alive():
                self._abandoned = [w for w in self._abandoned if w.is_alive()] + [worker]
                _log(
                    f"[refresh] Worker {worker.name} still busy after {self.stop_timeout}s; "
                    f"abandoned, its result will be discarded"
                )

        with self._delivery_lock:
            self._session = None
            self._set_state(ControllerState.IDLE)

    def _set_state(self, state: ControllerState) -> None:
        """Record a transition. Caller holds the delivery lock."""
        if state == self._state:
            return
        self._state = state
        site_id = self._session.site_id if self._session else None
        for listener in list(self._state_listeners):
            try:
                listener(state, site_id)
            except Exception as exc:
                _log(f"[refresh] State listener failed: {exc}")

    # --- Cycle execution ---

    def _run_cycle(self, session: RefreshSession) -> None:
        """Fetch once for the session and deliver the result."""
        session.cycle += 1
        try:
            catalog = self.collector.fetch(session.site_id, session.cancel_event)
            result = CycleResult(
                site_id=session.site_id,
                generation=session.generation,
                cycle=session.cycle,
                catalog=tuple(catalog),
            )
        except FetchCancelled:
            _log(f"[refresh] Cycle {session.cycle} for {session.site_id} cancelled")
            return
        except FetchError as exc:
            if exc.kind == FailureKind.MALFORMED:
                _log(f"[refresh] Malformed response for {session.site_id}, completing with empty catalog: {exc}")
            else:
                _log(f"[refresh] Cycle {session.cycle} for {session.site_id} failed ({exc.kind.value}): {exc}")
            result = CycleResult(
                site_id=session.site_id,
                generation=session.generation,
                cycle=session.cycle,
                failure=exc.kind,
                error=str(exc),
            )

        self._deliver(session, result)

    def _deliver(self, session: RefreshSession, result: CycleResult) -> bool:
        with self._delivery_lock:
            if session.generation != self._generation or session.cancel_event.is_set():
                _log(f"[refresh] Discarding cycle {result.cycle} for {result.site_id} (stale generation)")
                return False

            self._last_result = result
            if result.ok:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1

            for callback in list(self._subscribers):
                try:
                    callback(result)
                except Exception as exc:
                    _log(f"[refresh] Subscriber failed on cycle {result.cycle}: {exc}")

            if self._state == ControllerState.STARTING:
                self._set_state(ControllerState.RUNNING)
            return True

    def get_status(self) -> Dict[str, Any]:
        """Get status information for API responses."""
        session = self._session
        last = self._last_result
        abandoned = sum(1 for worker in list(self._abandoned) if worker.is_alive())
        return {
            "abandoned_workers": abandoned,
            "state": self._state.value,
            "site_id": session.site_id if session else None,
            "generation": self._generation,
            "cycles": session.cycle if session else 0,
            "interval": self.interval,
            "consecutive_failures": self._consecutive_failures,
            "last_cycle": last.to_dict() if last else None,
        }


Presenter = Callable[[str, List[ResolvedSlot]], None]


class DisplayState:
    """Resolved slot state for presentation, fed by cycle results.

    Loads the cached catalog of the selected site for instant availability,
    then follows live cycles. Results tagged with another site are discarded.
    A failed cycle keeps the last-known catalog and marks the board stale.
    """

    def __init__(
        self,
        registry: MappingRegistry,
        layout: Sequence[SlotDescriptor],
        store: Optional[DataStore] = None,
        *,
        cache_max_age: timedelta = timedelta(hours=24),
        history_days: int = 30,
    ):
        self.registry = registry
        self.layout = list(layout)
        self.store = store
        self.cache_max_age = cache_max_age
        self.history_days = history_days
        self._lock = threading.RLock()
        self._site_id: Optional[str] = None
        self._mapper: Optional[SlotMapper] = None
        self._catalog: EntityCatalog = ()
        self._slots: List[ResolvedSlot] = []
        self._last_result: Optional[CycleResult] = None
        self._last_error: Optional[str] = None
        self._last_refresh_ts: Optional[float] = None
        self._stale = False
        self._from_cache = False
        self._discarded = 0
        self._presenters: List[Presenter] = []
        # Periodic history cleanup counter
        self._delivered = 0
        self._cleanup_every = 100

    @property
    def site_id(self) -> Optional[str]:
        return self._site_id

    def add_presenter(self, presenter: Presenter) -> None:
        self._presenters.append(presenter)

    def select_site(self, site_id: str) -> None:
        """Switch the board to another site, starting from its cached catalog."""
        mapper = self.registry.mapper_for(site_id)
        cached = self.store.load_catalog(site_id, max_age=self.cache_max_age) if self.store else None

        _log(f"[display] Selected site {site_id} ({len(cached or ())} cached node(s))")
        for line in mapper.describe():
            _log(f"[display]   {line}")

        with self._lock:
            self._site_id = site_id
            self._mapper = mapper
            self._catalog = cached or ()
            self._from_cache = cached is not None
            self._stale = cached is not None
            self._last_result = None
            self._last_error = None
            self._last_refresh_ts = None
            self._slots = resolve_layout(mapper, self.layout, self._catalog)
            # Presenters are notified under the lock so a switch is never overtaken
            self._notify(site_id, list(self._slots))

    def on_cycle(self, result: CycleResult) -> bool:
        """Apply a cycle result.

        Returns:
            False if the result was tagged with a site other than the selected one.
        """
        with self._lock:
            if self._mapper is None or result.site_id != self._site_id:
                self._discarded += 1
                _log(f"[display] Discarding result for {result.site_id!r} (selected {self._site_id!r})")
                return False

            if result.ok:
                self._catalog = result.catalog
                self._stale = False
                self._from_cache = False
                self._last_error = None
            else:
                self._stale = True
                self._last_error = f"{result.failure.value}: {result.error}"

            self._last_result = result
            self._last_refresh_ts = result.completed_at
            self._slots = resolve_layout(self._mapper, self.layout, self._catalog)
            slots = list(self._slots)
            self._delivered += 1
            delivered = self._delivered

            resolved_count = sum(1 for slot in slots if slot.resolved)
            _log(
                f"[display] Cycle {result.cycle} for {result.site_id}: "
                f"{len(result.catalog)} node(s), {resolved_count}/{len(slots)} slot(s) resolved"
                + ("" if result.ok else f", stale ({result.failure.value})")
            )
            self._notify(result.site_id, slots)

        if self.store:
            if result.ok:
                self.store.save_catalog(result.site_id, result.catalog)
            self.store.save_snapshot(
                result.site_id,
                {**result.to_dict(), "slots": [slot.to_dict() for slot in slots]},
                failure=result.failure.value if result.failure else None,
            )
            if delivered % self._cleanup_every == 0:
                try:
                    deleted = self.store.cleanup_old_data(days=self.history_days)
                    if deleted > 0:
                        _log(f"[display] Cleaned up {deleted} old records")
                except Exception as cleanup_exc:
                    _log(f"[display] Cleanup failed: {cleanup_exc}")
        return True

    def _notify(self, site_id: str, slots: List[ResolvedSlot]) -> None:
        for presenter in list(self._presenters):
            try:
                presenter(site_id, slots)
            except Exception as exc:
                _log(f"[display] Presenter failed: {exc}")

    def snapshot(self) -> Tuple[List[ResolvedSlot], Optional[str], Optional[float]]:
        """Get current state snapshot.

        Returns:
            Tuple of (slots, last_error, last_refresh_timestamp)
        """
        with self._lock:
            return list(self._slots), self._last_error, self._last_refresh_ts

    def is_ready(self) -> bool:
        """Check if any data (live or cached) is available."""
        return self._last_result is not None or self._from_cache

    def get_status(self) -> Dict[str, Any]:
        """Get the board for API responses."""
        with self._lock:
            slots = [slot.to_dict() for slot in self._slots]
            site = self.registry.get(self._site_id) if self._site_id else None
            return {
                "meta": {
                    "site_id": self._site_id,
                    "site_name": site.display_name if site else self._site_id,
                    "status": "ready" if self.is_ready() else "loading",
                    "stale": self._stale,
                    "from_cache": self._from_cache,
                    "last_error": self._last_error,
                    "last_refresh_epoch": self._last_refresh_ts,
                    "entity_count": len(self._catalog),
                    "discarded_results": self._discarded,
                },
                "slots": slots,
            }
