"""Asynchronous message router for installation output.

Installation steps post user-facing text to two channels, 'out' and 'err'.
Posting only enqueues the message; a single background thread delivers queued
messages, in order, to every registered channel listener. A controller and all
the child controllers it creates for delegate packages share one router.

Thread Safety:
    - Any thread may post messages and add or remove listeners
    - Listeners are called from the dispatch thread only
    - The dispatch thread starts on first use and stops once, in terminate()

Usage Example:
    router = MessageRouter()
    router.add_channel_listener(StdChannelListener())
    router.out_writer().print("installing...")
    router.terminate()
"""

import logging
import queue
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class Channel(str, Enum):
    OUT = "out"
    ERR = "err"


@dataclass
class RoutedMessage:
    """A message waiting for delivery.

    Attributes:
        channel: Channel the message was posted to
        text: Message text, including any trailing newline
    """
    channel: Channel
    text: str


class ChannelListener(Protocol):
    """Receives messages delivered by a MessageRouter."""

    def out_msg_posted(self, msg: str) -> None:
        ...

    def err_msg_posted(self, msg: str) -> None:
        ...


class StdChannelListener:
    """Writes 'out' messages to stdout and 'err' messages to stderr."""

    def out_msg_posted(self, msg: str) -> None:
        sys.stdout.write(msg)
        sys.stdout.flush()

    def err_msg_posted(self, msg: str) -> None:
        sys.stderr.write(msg)
        sys.stderr.flush()


class LoggingChannelListener:
    """Forwards messages to a logger, one record per line."""

    def __init__(self, target: Optional[logging.Logger] = None):
        self.target = target or logger

    def out_msg_posted(self, msg: str) -> None:
        for line in msg.splitlines():
            self.target.info(line)

    def err_msg_posted(self, msg: str) -> None:
        for line in msg.splitlines():
            self.target.error(line)


class ChannelWriter:
    """print/write front end for one router channel."""

    def __init__(self, router: "MessageRouter", channel: Channel):
        self._router = router
        self._channel = channel

    def write(self, text: str) -> None:
        if text:
            self._router.post(self._channel, text)

    def print(self, text: str = "") -> None:
        self.write(f"{text}\n")

    def flush(self) -> None:
        self._router.flush()


class MessageRouter:
    """Single-threaded dispatcher of 'out' and 'err' messages.

    Parameters:
        max_queue_size: Number of undelivered messages held before posting blocks
    """

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self._queue: queue.Queue[Optional[RoutedMessage]] = queue.Queue(maxsize=max_queue_size)
        self._listeners: List[ChannelListener] = []
        self._listeners_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._terminated = threading.Event()

    # ----- Lifecycle -----

    def start(self) -> None:
        """Start the dispatch thread (no-op if running or terminated)."""
        with self._state_lock:
            if self._terminated.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run,
                name="compak-message-router",
                daemon=True
            )
            self._thread.start()
        logger.debug("Message router dispatch thread started")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    def terminate(self, timeout: float = 5.0) -> None:
        """Deliver pending messages, then stop the dispatch thread.

        Calling terminate() more than once has no further effect.
        """
        with self._state_lock:
            if self._terminated.is_set():
                return
            self._terminated.set()
            thread = self._thread

        if thread is not None and thread.is_alive():
            self._queue.put(None)
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Message router dispatch thread did not stop in time")
        logger.debug("Message router terminated")

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every message posted so far has been delivered."""
        if not self.is_running():
            return
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def _wait():
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    # ----- Listeners -----

    def add_channel_listener(self, listener: ChannelListener) -> None:
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_channel_listener(self, listener: ChannelListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def listeners(self) -> List[ChannelListener]:
        with self._listeners_lock:
            return list(self._listeners)

    # ----- Posting -----

    def out_writer(self) -> ChannelWriter:
        return ChannelWriter(self, Channel.OUT)

    def err_writer(self) -> ChannelWriter:
        return ChannelWriter(self, Channel.ERR)

    def post(self, channel: Channel, text: str) -> None:
        """Queue a message for delivery.

        After terminate() there is no dispatch thread, so messages are
        delivered on the calling thread instead of being dropped.
        """
        message = RoutedMessage(channel=channel, text=text)
        if self._terminated.is_set():
            self._dispatch(message)
            return
        if not self.is_running():
            self.start()
        self._queue.put(message)

    # ----- Dispatch -----

    def _run(self) -> None:
        """Dispatch thread main loop."""
        while True:
            message = self._queue.get()
            try:
                if message is None:
                    return
                self._dispatch(message)
            finally:
                self._queue.task_done()

    def _dispatch(self, message: RoutedMessage) -> None:
        for listener in self.listeners():
            try:
                if message.channel == Channel.OUT:
                    listener.out_msg_posted(message.text)
                else:
                    listener.err_msg_posted(message.text)
            except Exception:
                logger.exception(f"Channel listener {listener!r} failed")
