"""
Single-producer, multi-consumer broadcast channel.

Every value published is delivered to every receiver that was attached
at publish time, in publish order. Each receiver has its own backlog;
``publish`` blocks while any live receiver already holds
``capacity + 1`` undelivered values, so the slowest consumer throttles
the producer. A receiver closed by its consumer is dropped from the
channel and no longer waited on.

A receiver may carry a ``stall_timeout``: if the producer has waited that
long for it to take a value, the receiver is evicted and its consumer gets
``ReceiverStalled`` on the next ``recv``. While the producer is held back
by a full receiver, the other receivers' ``recv`` timeouts do not expire.

Usage:
    channel = BroadcastChannel(capacity=len(tasks) - 1)
    receivers = [channel.add_receiver(stall_timeout=600) for _ in tasks]
    channel.publish(frame)
    channel.close()
    # consumer side
    try:
        frame = receiver.recv(timeout=600)
    except ChannelClosed:
        ...
"""

import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """The producer closed the channel and the receiver's backlog is drained."""

    pass


class RecvTimeout(Exception):
    """No value arrived within the receive timeout."""

    pass


class ReceiverStalled(Exception):
    """The receiver did not take a value within its stall timeout and was evicted."""

    pass


class BroadcastReceiver:
    """Receiving endpoint of a :class:`BroadcastChannel`. Use from one thread only."""

    def __init__(self, channel: "BroadcastChannel", receiver_id: int, stall_timeout: float | None = None) -> None:
        self._channel = channel
        self._buffer: deque = deque()
        self._closed = False
        self._stalled = False
        self.receiver_id = receiver_id
        self.stall_timeout = stall_timeout

    @property
    def closed(self) -> bool:
        return self._closed

    def recv(self, timeout: float | None = None):
        """
        Return the next value.

        Raises:
            ReceiverStalled: the producer evicted this receiver.
            ChannelClosed: the channel was closed and every value was received,
                or this receiver was closed.
            RecvTimeout: nothing arrived within ``timeout`` seconds while the
                producer was not held back by another receiver.
        """
        channel = self._channel
        cond = channel._cond
        deadline = None if timeout is None else time.monotonic() + timeout
        with cond:
            while not self._buffer:
                if self._stalled:
                    raise ReceiverStalled()
                if self._closed or channel._closed:
                    raise ChannelClosed()
                if deadline is None or channel._throttled:
                    # A throttled producer wakes us when it publishes or evicts
                    cond.wait()
                    if deadline is not None:
                        deadline = time.monotonic() + timeout
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RecvTimeout()
                cond.wait(remaining)
            value = self._buffer.popleft()
            # Wake a producer waiting for room
            cond.notify_all()
            return value

    def close(self) -> None:
        """Detach from the channel; pending values are discarded and the producer stops waiting on us."""
        with self._channel._cond:
            if self._closed:
                return
            self._channel._detach(self)
        logger.debug("[broadcast] Receiver %d closed", self.receiver_id)


class BroadcastChannel:
    """Bounded broadcast channel; see module docstring."""

    def __init__(self, capacity: int = 0) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._cond = threading.Condition()
        self._receivers: list[BroadcastReceiver] = []
        self._next_id = 0
        self._closed = False
        self._throttled = False
        self._published = 0

    @property
    def published(self) -> int:
        return self._published

    @property
    def receiver_count(self) -> int:
        with self._cond:
            return len(self._receivers)

    def add_receiver(self, stall_timeout: float | None = None) -> BroadcastReceiver:
        with self._cond:
            if self._closed:
                raise RuntimeError("Cannot add a receiver to a closed channel")
            receiver = BroadcastReceiver(self, self._next_id, stall_timeout=stall_timeout)
            self._next_id += 1
            self._receivers.append(receiver)
            return receiver

    def _detach(self, receiver: BroadcastReceiver) -> None:
        # Caller holds the condition
        receiver._closed = True
        receiver._buffer.clear()
        self._receivers.remove(receiver)
        self._cond.notify_all()

    def _wait_for_room(self) -> None:
        started = time.monotonic()
        while True:
            full = [r for r in self._receivers if len(r._buffer) > self._capacity]
            if not full:
                return

            waited = time.monotonic() - started
            budgets = []
            evicted = False
            for receiver in full:
                if receiver.stall_timeout is None:
                    continue
                if waited >= receiver.stall_timeout:
                    receiver._stalled = True
                    self._detach(receiver)
                    evicted = True
                    logger.warning(
                        "[broadcast] Receiver %d took no value for %.1fs; evicted",
                        receiver.receiver_id,
                        receiver.stall_timeout,
                    )
                else:
                    budgets.append(receiver.stall_timeout - waited)
            if evicted:
                continue

            self._throttled = True
            self._cond.notify_all()
            self._cond.wait(min(budgets) if budgets else None)

    def publish(self, value) -> int:
        """
        Deliver ``value`` to every attached receiver, blocking for room.

        Returns:
            Number of receivers the value was delivered to.
        """
        with self._cond:
            if self._closed:
                raise RuntimeError("Cannot publish on a closed channel")
            try:
                self._wait_for_room()
            finally:
                self._throttled = False
            for receiver in self._receivers:
                receiver._buffer.append(value)
            self._published += 1
            self._cond.notify_all()
            return len(self._receivers)

    def close(self) -> None:
        """Signal end-of-stream. Receivers drain what is buffered, then get ChannelClosed."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        logger.debug("[broadcast] Channel closed after %d values", self._published)
