from typing import Callable, Optional
import logging
import queue
import threading

logger = logging.getLogger(__name__)

_WAKE = object()


class CoalescingWorker:
    """
    Single background worker fed through a slot of depth one plus a pending flag.

    Any number of submit() calls made while a pass is running collapse into at
    most one further pass, and that pass always observes the latest submit.
    """

    def __init__(self, work: Callable[[], None], name: str = "coalescing-worker"):
        self.work = work
        self.name = name
        self.passes = 0
        self._slot: "queue.Queue[object]" = queue.Queue(maxsize=1)
        self._pending = False
        self._pending_lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def submit(self) -> None:
        with self._pending_lock:
            self._pending = True
        try:
            self._slot.put_nowait(_WAKE)
        except queue.Full:
            # A wake-up is already queued; the flag carries this request
            pass

    def take_pending(self) -> bool:
        """Clears the pending flag and reports whether it was set."""
        with self._pending_lock:
            pending = self._pending
            self._pending = False
            return pending

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stops the worker once any in-flight pass has finished."""
        self._stopping.set()
        try:
            self._slot.put_nowait(_WAKE)
        except queue.Full:
            pass
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while True:
            self._slot.get()
            if self._stopping.is_set():
                break
            while self.take_pending():
                self._run_pass()
                if self._stopping.is_set():
                    return

    def _run_pass(self) -> None:
        self.passes += 1
        try:
            self.work()
        except Exception as e:
            logger.error(f"{self.name} pass failed: {e}", exc_info=True)
