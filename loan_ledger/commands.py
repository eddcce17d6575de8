"""
Command Queue Module

Serializes every ledger mutation onto one worker thread. User operations,
penalty sweeps and sync reloads all go through the same queue, so a payment
and a penalty can never interleave on the same loan.
"""

import logging
import threading
from concurrent.futures import CancelledError, Future, TimeoutError as FutureTimeout
from queue import Queue
from typing import Any, Callable, Optional

from .errors import OperationTimeout, StoreUnavailable

_STOP = object()


class CommandQueue:
    """Single-writer command queue with bounded waits"""

    def __init__(self, timeout: float = 30.0, name: str = "ledger-writer"):
        self.timeout = timeout
        self.name = name
        self._queue: Queue = Queue()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._closed = False
        self.logger = logging.getLogger("loan_ledger.commands")

    def start(self) -> None:
        """Start the worker thread (idempotent); reopens a stopped queue"""
        with self._start_lock:
            self._closed = False
            self._spawn()

    def _spawn(self) -> None:
        if self.is_running():
            return
        self._thread = threading.Thread(target=self._run, name=self.name)
        self._thread.daemon = True
        self._thread.start()
        self.logger.debug(f"Command worker {self.name} started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Finish queued commands, then stop the worker.

        The queue stays closed afterwards: later commands are refused rather
        than starting a new worker.
        """
        with self._start_lock:
            self._closed = True
            thread = self._thread
            if not thread or not thread.is_alive():
                return
            self._queue.put(_STOP)
        if thread is not threading.current_thread():
            thread.join(timeout if timeout is not None else self.timeout)
        self.logger.debug(f"Command worker {self.name} stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def on_worker_thread(self) -> bool:
        return self._thread is threading.current_thread()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    break
                fn, args, kwargs, future = item
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    future.set_result(fn(*args, **kwargs))
                except BaseException as e:
                    future.set_exception(e)
            finally:
                self._queue.task_done()

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """
        Queue a command and return its future, starting the worker if needed

        Raises:
            StoreUnavailable: the queue has been stopped
        """
        future: Future = Future()
        with self._start_lock:
            if self._closed:
                raise StoreUnavailable(f"Command queue {self.name} is closed")
            self._spawn()
            self._queue.put((fn, args, kwargs, future))
        return future

    def execute(self, fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """
        Run a command on the writer thread and wait for its outcome.

        Commands issued from the writer thread itself run inline.

        Raises:
            OperationTimeout: the command did not finish within the timeout.
                It is cancelled if it has not started yet; nothing is retried.
            StoreUnavailable: the queue has been stopped
            Exception: whatever the command raised
        """
        if self.on_worker_thread():
            return fn(*args, **kwargs)

        future = self.submit(fn, *args, **kwargs)
        wait = self.timeout if timeout is None else timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeout:
            future.cancel()
            raise OperationTimeout(
                f"Ledger operation {getattr(fn, '__name__', repr(fn))} did not complete in {wait}s",
                {"timeout": wait}
            )
        except CancelledError:
            raise OperationTimeout(f"Ledger operation {getattr(fn, '__name__', repr(fn))} was cancelled")

    def post(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Queue a command without waiting; failures are logged, and a closed queue drops it"""
        try:
            future = self.submit(fn, *args, **kwargs)
        except StoreUnavailable as e:
            self.logger.debug(f"Dropped {getattr(fn, '__name__', repr(fn))}: {e}")
            future = Future()
            future.cancel()
            return future
        future.add_done_callback(self._log_failure(fn))
        return future

    def _log_failure(self, fn: Callable[..., Any]) -> Callable[[Future], None]:
        def callback(future: Future) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                self.logger.error(f"Background command {getattr(fn, '__name__', repr(fn))} failed: {error}")
        return callback

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every command queued so far has run"""
        if self.on_worker_thread():
            return
        self.execute(lambda: None, timeout=timeout)
