from __future__ import annotations

import collections
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from tqdm import tqdm

from .logger import setup_logger

_logger = setup_logger()


class ProgressState(Enum):
    STARTED = "started"
    PROGRESS = "progress"
    FINISHED = "finished"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (ProgressState.FINISHED, ProgressState.SKIPPED, ProgressState.FAILED)


@dataclass(frozen=True)
class ProgressEvent:
    name: str
    state: ProgressState
    downloaded: int = 0
    total: int = 0


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressChannel:
    """
    Bounded progress channel between transfers and one observer.

    Transfers never wait on the observer: when the queue is full the oldest
    intermediate event is dropped to make room. Final events go to a side
    list and are always delivered, after every earlier event of the same
    transfer.
    A single reporter thread calls the observer, so calls are serialized.
    """

    def __init__(self, callback: Optional[ProgressCallback], capacity: int = 64) -> None:
        self._callback = callback
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=capacity)
        self._finals: "collections.deque[ProgressEvent]" = collections.deque()
        self._closed = threading.Event()
        self._drop_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0
        if callback is not None:
            self._thread = threading.Thread(target=self._run, name="soarpy-progress", daemon=True)
            self._thread.start()

    def emit(self, event: ProgressEvent) -> None:
        if self._callback is None:
            return
        if event.state.is_final:
            self._finals.append(event)
            return
        with self._drop_lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    pass
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def close(self) -> None:
        """Flush every pending final event and stop the reporter."""
        self._closed.set()
        if self._thread is not None:
            self._thread.join()

    def __enter__(self) -> "ProgressChannel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=0.05)
            except queue.Empty:
                event = None
            if event is not None:
                self._deliver(event)
                continue

            finals = []
            while self._finals:
                finals.append(self._finals.popleft())
            # Everything queued before these finals was put before them.
            while True:
                try:
                    self._deliver(self._queue.get_nowait())
                except queue.Empty:
                    break
            for final in finals:
                self._deliver(final)

            if self._closed.is_set() and self._queue.empty() and not self._finals:
                return

    def _deliver(self, event: ProgressEvent) -> None:
        try:
            self._callback(event)
        except Exception:
            _logger.warning("Progress observer raised on %s", event.name, exc_info=True)


class TqdmProgress:
    """Observer that renders one tqdm bar per transfer."""

    def __init__(self, disable: bool = False) -> None:
        self.disable = disable
        self._bars: Dict[str, tqdm] = {}

    def __call__(self, event: ProgressEvent) -> None:
        bar = self._bars.get(event.name)
        if bar is None:
            bar = tqdm(
                total=event.total or None,
                unit="B",
                unit_scale=True,
                desc=event.name,
                disable=self.disable,
                leave=True,
            )
            self._bars[event.name] = bar
        if event.total and bar.total != event.total:
            bar.total = event.total
        if event.downloaded > bar.n:
            bar.update(event.downloaded - bar.n)
        if event.state.is_final:
            if event.state is ProgressState.FAILED:
                bar.set_postfix_str("failed")
            elif event.state is ProgressState.SKIPPED:
                bar.set_postfix_str("skipped")
            bar.close()
            del self._bars[event.name]
