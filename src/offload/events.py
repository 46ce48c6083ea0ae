"""Typed publish/subscribe channels for worker events."""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

Callback = Callable[..., object]


class _Subscription:
    callback: Callback
    once: bool

    def __init__(self, callback: Callback, once: bool) -> None:
        self.callback = callback
        self.once = once


class Channel:
    """One named event channel with a fixed argument count.

    ``arity`` of ``None`` marks a variadic channel. Subscribers run in
    subscription order on the thread that emits.
    """

    name: str
    arity: int | None
    _subscriptions: list[_Subscription]
    _lock: threading.Lock

    def __init__(self, name: str, arity: int | None) -> None:
        """Initialize a channel.

        :param name: Channel name.
        :param arity: Number of arguments every emission carries, ``None`` for any.
        """
        self.name = name
        self.arity = arity
        self._subscriptions = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Channel(name={self.name!r}, arity={self.arity!r})"

    def subscribe(self, callback: Callback, once: bool = False) -> None:
        """Register a subscriber.

        :param callback: Callable invoked with the emitted arguments.
        :param once: Drop the subscriber after its first invocation.
        :raises TypeError: If ``callback`` is not callable.
        """
        if callable(callback) is False:
            raise TypeError(f"{self.name} subscriber must be callable")
        with self._lock:
            self._subscriptions.append(_Subscription(callback, once))

    def unsubscribe(self, callback: Callback) -> bool:
        """Remove the first subscription of ``callback``.

        :param callback: Previously subscribed callable.
        :returns: ``True`` when a subscription was removed.
        """
        with self._lock:
            for index, subscription in enumerate(self._subscriptions):
                if subscription.callback == callback:
                    del self._subscriptions[index]
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def emit(self, *args: object) -> int:
        """Deliver one emission to every current subscriber.

        A subscriber that raises is logged and does not prevent delivery to
        the remaining subscribers.

        :param args: Emitted arguments.
        :returns: Number of subscribers invoked.
        :raises TypeError: If the argument count does not match the channel arity.
        """
        if self.arity is not None and len(args) != self.arity:
            raise TypeError(
                f"{self.name} channel carries {self.arity} argument(s), got {len(args)}"
            )

        with self._lock:
            subscriptions: list[_Subscription] = list(self._subscriptions)
            self._subscriptions = [item for item in self._subscriptions if item.once is False]

        for subscription in subscriptions:
            try:
                subscription.callback(*args)
            except Exception:
                logger.exception("Subscriber of %s channel raised", self.name)
        return len(subscriptions)


class WorkerEvents:
    """The fixed set of channels every worker handle exposes."""

    message: Channel
    error: Channel
    progress: Channel
    done: Channel
    exit: Channel

    def __init__(self) -> None:
        self.message = Channel("message", None)
        self.error = Channel("error", 1)
        self.progress = Channel("progress", 1)
        self.done = Channel("done", 0)
        self.exit = Channel("exit", 0)

    def channel(self, name: str) -> Channel:
        """Look up a channel by name.

        :param name: One of ``message``, ``error``, ``progress``, ``done``, ``exit``.
        :returns: Matching channel.
        :raises ValueError: If ``name`` is not a worker event.
        """
        channels: dict[str, Channel] = {
            "message": self.message,
            "error": self.error,
            "progress": self.progress,
            "done": self.done,
            "exit": self.exit,
        }
        selected: Channel | None = channels.get(name)
        if selected is None:
            raise ValueError(
                f"Unknown worker event {name!r}; expected one of: " + ", ".join(sorted(channels))
            )
        return selected
