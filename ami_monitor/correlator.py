"""
Correlation of outgoing actions with the responses and events they produce.

Every action carries a unique ``ActionID``. Until the action completes, every
message bearing that id is claimed by its :class:`PendingAction`; the action
completes on the first of these signals, in priority order:

1. the explicit completion event of the policy (``*ListComplete``),
2. a terminal ``Response`` when no completion event is expected from the
   server, after a grace period that folds in trailing events,
3. the timeout, which fails the action but keeps the events collected so far.
"""
import asyncio
import enum
import itertools
import logging
import secrets
from typing import Dict, List, Optional

from ami_monitor.codec import Message
from ami_monitor.errors import AMIError, ActionFailed, ProtocolError, QueryTimeout

TERMINAL_RESPONSES = frozenset(('Success', 'Follows', 'Goodbye', 'Error'))


class Completion(enum.Enum):
    """What resolved a pending action."""
    EVENT = 'event'
    RESPONSE = 'response'
    TIMEOUT = 'timeout'
    ABORTED = 'aborted'


class CompletionPolicy:
    """
    How to decide that an action is done.

    :param complete_event: Name of the event closing the list, if the action
        produces one. When the server answers with ``EventList: start`` the
        action stays open until that event arrives; any other terminal
        response means the list came back aggregated in the response itself.
    :param grace_period: Seconds to keep collecting events tagged with the
        action's id after a terminal response
    """

    __slots__ = ('complete_event', 'grace_period')

    def __init__(self, complete_event: Optional[str] = None, grace_period: float = 0.0):
        self.complete_event = complete_event
        self.grace_period = grace_period

    @classmethod
    def response(cls, grace_period: float = 0.0) -> 'CompletionPolicy':
        return cls(None, grace_period)

    @classmethod
    def event_list(cls, complete_event: str, grace_period: float = 0.0) -> 'CompletionPolicy':
        return cls(complete_event, grace_period)

    def __repr__(self) -> str:
        return f"CompletionPolicy(complete_event={self.complete_event!r}, grace_period={self.grace_period})"


class ActionResult:
    """
    Outcome of one action: the response, every event collected under its
    ``ActionID`` and, on failure, the error.
    """

    def __init__(self, action_id: str, action: str, completion: Completion,
                 response: Optional[Message], events: List[Message],
                 error: Optional[AMIError] = None, elapsed: float = 0.0):
        self.action_id = action_id
        self.action = action
        self.completion = completion
        self.response = response
        self.events = events
        self.error = error
        self.elapsed = elapsed

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def __repr__(self) -> str:
        return (f"ActionResult({self.action} {self.action_id}, completion={self.completion.value}, "
                f"events={len(self.events)}, error={self.error!r})")


class PendingAction:
    def __init__(self, action_id: str, action: str, policy: CompletionPolicy,
                 future: 'asyncio.Future[ActionResult]', issued_at: float):
        self.action_id = action_id
        self.action = action
        self.policy = policy
        self.future = future
        self.issued_at = issued_at
        self.response: Optional[Message] = None
        self.events: List[Message] = []
        self.awaiting_event = False
        self.timeout_handle: Optional[asyncio.TimerHandle] = None
        self.grace_handle: Optional[asyncio.TimerHandle] = None

    def cancel_timers(self) -> None:
        for handle in (self.timeout_handle, self.grace_handle):
            if handle is not None:
                handle.cancel()
        self.timeout_handle = self.grace_handle = None


class ActionCorrelator:
    """
    Registry of in-flight actions for one connection.

    Identifiers are ``<random prefix>-<counter>``; the prefix is drawn anew for
    every correlator so ids never collide across connection restarts.
    """

    def __init__(self, prefix: Optional[str] = None):
        self.logger = logging.getLogger('Correlator')
        self._prefix = prefix or secrets.token_hex(4)
        self._counter = itertools.count(1)
        self._pending: Dict[str, PendingAction] = {}

    def next_action_id(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, action_id: str) -> bool:
        return action_id in self._pending

    def register(self, action: str, policy: CompletionPolicy, timeout: float,
                 action_id: Optional[str] = None) -> PendingAction:
        """
        Registers a new pending action and arms its timeout.

        :param action: Action name, for logs and results
        :param policy: Completion policy
        :param timeout: Seconds before the action fails with :class:`QueryTimeout`
        :param action_id: Explicit identifier, generated when omitted
        :return: The pending action; await ``pending.future`` for the result
        """
        loop = asyncio.get_running_loop()
        action_id = action_id or self.next_action_id()
        if action_id in self._pending:
            raise ProtocolError(f"ActionID {action_id} is already in flight")

        pending = PendingAction(action_id, action, policy, loop.create_future(), loop.time())
        pending.timeout_handle = loop.call_later(timeout, self._expire, pending, timeout)
        pending.future.add_done_callback(lambda fut: self._discard(pending))
        self._pending[action_id] = pending
        return pending

    def dispatch(self, message: Message) -> bool:
        """
        Offers a message to the pending action owning its ``ActionID``.

        :param message: A classified message
        :return: True if the message was claimed
        """
        action_id = message.action_id
        if action_id is None:
            return False
        pending = self._pending.get(action_id)
        if pending is None:
            return False

        if message.is_event:
            if pending.policy.complete_event is not None and message.name == pending.policy.complete_event:
                self._resolve(pending, Completion.EVENT)
            else:
                pending.events.append(message)
            return True

        if message.is_response:
            self._on_response(pending, message)
            return True

        return False

    def _on_response(self, pending: PendingAction, message: Message) -> None:
        value = message.name
        if value not in TERMINAL_RESPONSES:
            self.logger.warning(f"Unexpected response value {value!r} for {pending.action} {pending.action_id}")
        pending.response = message

        if value == 'Error':
            error = ActionFailed(message.get('Message', f"{pending.action} failed"),
                                 {"action": pending.action, "action_id": pending.action_id})
            self._resolve(pending, Completion.RESPONSE, error)
            return

        policy = pending.policy
        if policy.complete_event is not None and (message.get('EventList') or '').lower() == 'start':
            pending.awaiting_event = True
            return

        if policy.grace_period > 0:
            if pending.grace_handle is None:
                loop = asyncio.get_running_loop()
                pending.grace_handle = loop.call_later(policy.grace_period, self._resolve,
                                                       pending, Completion.RESPONSE)
        else:
            self._resolve(pending, Completion.RESPONSE)

    def _expire(self, pending: PendingAction, timeout: float) -> None:
        error = QueryTimeout(f"{pending.action} timed out after {timeout}s",
                             {"action_id": pending.action_id, "events": len(pending.events)})
        self.logger.warning(f"{pending.action} {pending.action_id} timed out with {len(pending.events)} events")
        self._resolve(pending, Completion.TIMEOUT, error)

    def _resolve(self, pending: PendingAction, completion: Completion,
                 error: Optional[AMIError] = None) -> None:
        # the entry goes first, later messages with this id are no longer claimed
        if self._pending.get(pending.action_id) is not pending:
            return
        del self._pending[pending.action_id]
        pending.cancel_timers()
        if pending.future.done():
            return

        elapsed = asyncio.get_running_loop().time() - pending.issued_at
        result = ActionResult(pending.action_id, pending.action, completion,
                              pending.response, pending.events, error, elapsed)
        self.logger.debug(f"Resolved {result} in {elapsed:.3f}s")
        pending.future.set_result(result)

    def _discard(self, pending: PendingAction) -> None:
        # caller cancelled the future
        if self._pending.get(pending.action_id) is pending:
            del self._pending[pending.action_id]
            pending.cancel_timers()

    def fail(self, action_id: str, error: AMIError) -> None:
        pending = self._pending.get(action_id)
        if pending is not None:
            self._resolve(pending, Completion.ABORTED, error)

    def fail_all(self, error: AMIError) -> int:
        """
        Resolves every pending action with ``error``. Actions already resolved
        are left alone.

        :return: Number of actions failed
        """
        pendings = list(self._pending.values())
        for pending in pendings:
            self._resolve(pending, Completion.ABORTED, error)
        if pendings:
            self.logger.info(f"Aborted {len(pendings)} pending actions: {error}")
        return len(pendings)
