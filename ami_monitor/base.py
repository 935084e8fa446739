import logging
from abc import abstractmethod
from typing import Any, Callable, Coroutine, Dict, Iterable, Optional, Union

from ami_monitor.codec import Message
from ami_monitor.config import AMIConfig
from ami_monitor.correlator import ActionResult, CompletionPolicy
from ami_monitor.router import ALL_EVENTS, EventRouter, Subscription


class AMIClientBase:
    """
    Класс AMIClientBase является родительским для транспортных клиентов.

    Holds the event router and the subset of AMI actions used for extension
    and device monitoring. Transports implement :meth:`send_action`.
    """

    def __init__(self, config: AMIConfig):
        """
        Initializes the AMI Client

        :param config: Connection settings
        """
        self.logger = logging.getLogger('AMI Client')
        self.config = config
        self.router = EventRouter(owner=self)

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @abstractmethod
    async def start(self) -> None:
        """
        Connects, authenticates and keeps the connection alive until :meth:`stop`.

        :return: None
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """
        Closes the connection for good. No reconnection happens afterwards.

        :return: None
        """
        pass

    @abstractmethod
    async def send_action(
            self,
            action: str,
            fields: Optional[Dict[str, Any]] = None,
            policy: Optional[CompletionPolicy] = None,
            timeout: Optional[float] = None
    ) -> ActionResult:
        """
        Sends an AMI action and waits for its completion

        :param action: The action name
        :param fields: Action specific fields
        :param policy: How completion is detected, a plain response by default
        :param timeout: Seconds to wait, the per-action default when omitted
        :return: The result, failures are reported in ``result.error``
        """
        pass

    def subscribe(self, topics: Union[str, Iterable[str]] = ALL_EVENTS, maxsize: int = 0) -> Subscription:
        """
        Opens a channel receiving the events not claimed by a pending action.

        :param topics: Event name, names, or ``'*'``
        :param maxsize: Queue bound, 0 for unbounded
        :return: The subscription, iterate it with ``async for``
        """
        return self.router.subscribe(topics, maxsize)

    def register_callback(self, event_name: str, callback: Callable[[Message, Any], Coroutine]) -> None:
        """
        Registers a callback function to be called when a specific event occurs.

        :param event_name: The name of the event to register the callback for.
        :param callback: The callback function to be called when the event occurs.
        :return: None
        """
        self.router.register_callback(event_name, callback)

    def _response_policy(self) -> CompletionPolicy:
        return CompletionPolicy.response(self.config.grace_period)

    def _list_policy(self, complete_event: str) -> CompletionPolicy:
        return CompletionPolicy.event_list(complete_event, self.config.grace_period)

    async def _login(self, timeout: Optional[float] = None) -> ActionResult:
        """
        Login to the AMI server using the configured username and secret

        :param timeout: Authentication timeout
        :return: The login result
        """
        data = {
            "Username": self.config.username,
            "Secret": self.config.secret,
            "Events": self.config.events,
        }
        return await self.send_action("Login", data, CompletionPolicy.response(),
                                      timeout or self.config.auth_timeout)

    async def logoff(self, timeout: Optional[float] = None) -> ActionResult:
        """
        Logoff from the AMI server

        :return: The result, the server answers with ``Response: Goodbye``
        """
        return await self.send_action("Logoff", policy=CompletionPolicy.response(), timeout=timeout)

    async def ping(self, timeout: Optional[float] = None) -> ActionResult:
        """
        No-op round trip, used as keepalive

        :return: The result
        """
        return await self.send_action("Ping", policy=CompletionPolicy.response(), timeout=timeout)

    async def extension_state(self, extension: str, context: str,
                              timeout: Optional[float] = None) -> ActionResult:
        """
        Queries the hint state of one extension

        :param extension: The extension
        :param context: The dialplan context holding its hint
        :param timeout: Seconds to wait
        :return: The result, the state is in the response fields
        """
        data = {
            "Exten": extension,
            "Context": context,
        }
        return await self.send_action("ExtensionState", data, self._response_policy(), timeout)

    async def extension_state_list(self, context: Optional[str] = None,
                                   timeout: Optional[float] = None) -> ActionResult:
        """
        Queries the hint state of every extension

        :param context: Restricts the list to one context
        :param timeout: Seconds to wait
        :return: The result, one ``ExtensionStatus`` event per extension or an aggregated response
        """
        return await self.send_action("ExtensionStateList", {"Context": context},
                                      self._list_policy("ExtensionStateListComplete"), timeout)

    async def device_state_list(self, timeout: Optional[float] = None) -> ActionResult:
        """
        Queries the state of every device

        :param timeout: Seconds to wait
        :return: The result, one ``DeviceStateChange`` event per device
        """
        return await self.send_action("DeviceStateList", policy=self._list_policy("DeviceStateListComplete"),
                                      timeout=timeout)
