import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, FrozenSet, Iterable, List, Optional, Union

from ami_monitor.codec import Message

ALL_EVENTS = '*'

EventCallback = Callable[[Message, Any], Coroutine]


class Subscription:
    """
    An ordered channel of events for a set of event names.

    Iterate with ``async for``; iteration ends once the subscription or the
    router is closed.
    """

    def __init__(self, router: 'EventRouter', topics: FrozenSet[str], maxsize: int = 0):
        self.topics = topics
        self._router = router
        self._queue: 'asyncio.Queue[Optional[Message]]' = asyncio.Queue(maxsize)
        self.closed = False
        self.dropped = 0

    def matches(self, message: Message) -> bool:
        return ALL_EVENTS in self.topics or message.name in self.topics

    def _put(self, message: Optional[Message]) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            self._router.logger.warning(f"Subscription {sorted(self.topics)} is full, dropped {message!r}")

    async def get(self) -> Optional[Message]:
        """
        Waits for the next event.

        :return: The event, or None once the subscription is closed
        """
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._router.unsubscribe(self)
        # stop sentinel; a full queue ends through the closed flag in get()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> Message:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class EventRouter:
    """
    Dispatches events not claimed by a pending action, by event name.

    Events reach subscriptions in arrival order. Coroutine callbacks registered
    with :meth:`register_callback` are started as tasks, in registration order.
    """

    def __init__(self, owner: Any = None):
        self.logger = logging.getLogger('Event Router')
        self._owner = owner
        self._subscriptions: List[Subscription] = []
        self._event_callbacks: Dict[str, List[EventCallback]] = {}
        self._tasks = set()

    def subscribe(self, topics: Union[str, Iterable[str]] = ALL_EVENTS, maxsize: int = 0) -> Subscription:
        """
        Opens a channel for the given event names.

        :param topics: One event name, several, or ``'*'`` for every event
        :param maxsize: Queue bound, 0 for unbounded; events beyond it are dropped
        :return: The subscription
        """
        if isinstance(topics, str):
            topics = (topics,)
        subscription = Subscription(self, frozenset(topics), maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def register_callback(self, event_name: str, callback: EventCallback) -> None:
        """
        Registers a coroutine function called as ``callback(event, owner)``.

        :param event_name: Event name or ``'*'``
        :param callback: The coroutine function
        :return: None
        """
        self._event_callbacks.setdefault(event_name, []).append(callback)

    def _get_functions(self, event_name: Optional[str]) -> List[EventCallback]:
        return self._event_callbacks.get(event_name, []) + self._event_callbacks.get(ALL_EVENTS, [])

    def dispatch(self, message: Message) -> int:
        """
        Delivers an event to every matching subscription and callback.

        :param message: An unclaimed event
        :return: Number of receivers
        """
        receivers = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(message):
                subscription._put(message)
                receivers += 1

        functions = self._get_functions(message.name)
        if functions:
            loop = asyncio.get_running_loop()
            for fn in functions:
                task = loop.create_task(fn(message, self._owner))
                self._tasks.add(task)
                task.add_done_callback(self._callback_done)
            self.logger.debug(f"Execute callbacks for event '{message.name}'")
            receivers += len(functions)

        if not receivers:
            self.logger.debug(f"No receiver for event '{message.name}'")
        return receivers

    def _callback_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Event callback failed: {task.exception()!r}")

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
        for task in list(self._tasks):
            task.cancel()
