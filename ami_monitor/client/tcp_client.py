import asyncio
import enum
import logging
import ssl
from typing import Any, Dict, Optional

from ami_monitor import errors
from ami_monitor.base import AMIClientBase
from ami_monitor.codec import FrameDecoder, Message, MessageKind, encode_action, mask_secrets, parse_frame
from ami_monitor.config import AMIConfig
from ami_monitor.correlator import ActionCorrelator, ActionResult, CompletionPolicy

READ_CHUNK = 65536


class ConnectionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    AUTHENTICATING = 'authenticating'
    READY = 'ready'
    CLOSING = 'closing'


class TCPClient(AMIClientBase):
    """
    AMI client over a persistent TCP (optionally TLS) connection.

    One read loop feeds the frame decoder; responses and events tagged with an
    in-flight ``ActionID`` go to the correlator, other events to the router.
    Writes are serialized by a lock. A lost connection fails every pending
    action and is re-established with bounded retries.
    """

    def __init__(self, config: AMIConfig):
        super().__init__(config)
        self.logger = logging.getLogger('TCP Client')
        self.state = ConnectionState.DISCONNECTED
        self.server_banner: Optional[str] = None
        self.reconnect_attempts = 0
        self.permanently_failed = False
        self.last_error: Optional[BaseException] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._decoder = FrameDecoder()
        self._correlator = ActionCorrelator()
        self._write_lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._gave_up = asyncio.Event()
        self._stopped = False
        self._read_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._lost_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def pending_actions(self) -> int:
        return len(self._correlator)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.config.ssl_enabled:
            return None
        context = ssl.create_default_context(cafile=self.config.cert_ca)
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    async def start(self) -> None:
        """
        Connects and authenticates. A connection failure schedules reconnection
        instead of raising; rejected credentials raise.

        :raises AuthenticationError: if the server rejects the credentials
        """
        if self._stopped:
            raise errors.ConnectionError("Client was stopped")
        try:
            await self.connect()
        except errors.ConnectionError as e:
            self.logger.error(f"Connection to {self.host}:{self.port} failed: {e}")
            self._schedule_reconnect()

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """
        Waits until the connection is authenticated.

        :raises ReconnectExhausted: once reconnection has given up
        :raises asyncio.TimeoutError: if ``timeout`` elapses first
        """
        watchers = [asyncio.ensure_future(self._ready.wait()), asyncio.ensure_future(self._gave_up.wait())]
        try:
            done, _ = await asyncio.wait(watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for watcher in watchers:
                watcher.cancel()
        if self._ready.is_set():
            return
        if self.permanently_failed:
            raise errors.ReconnectExhausted(f"Gave up after {self.reconnect_attempts} attempts",
                                            {"last_error": repr(self.last_error)})
        if not done:
            raise asyncio.TimeoutError()
        raise errors.ConnectionError("Connection is not ready", {"state": self.state.value})

    async def connect(self) -> ActionResult:
        """
        Opens the socket, reads the server banner and logs in.

        :return: The login result
        :raises ConnectionError: on socket failure or authentication timeout
        :raises AuthenticationError: if the credentials are rejected
        """
        self.state = ConnectionState.CONNECTING
        self.logger.info(f"Connecting to {self.host}:{self.port}")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host=self.host, port=self.port, ssl=self._ssl_context()),
                timeout=self.config.connect_timeout)
            banner = await asyncio.wait_for(self._reader.readline(), timeout=self.config.connect_timeout)
        except (OSError, asyncio.TimeoutError, ssl.SSLError) as e:
            await self._close_transport()
            self.state = ConnectionState.DISCONNECTED
            self.last_error = e
            raise errors.ConnectionError(f"Cannot connect to {self.host}:{self.port}: {e!r}") from e

        if not banner:
            await self._close_transport()
            self.state = ConnectionState.DISCONNECTED
            raise errors.ConnectionError(f"{self.host}:{self.port} closed the connection before the banner")
        self.server_banner = banner.decode(self.config.encoding, errors='replace').strip()
        self.logger.info(f"Connected: {self.server_banner}")

        self._decoder = FrameDecoder()
        self._correlator = ActionCorrelator()
        loop = asyncio.get_running_loop()
        self._read_task = loop.create_task(self._read_loop(self._reader))

        self.state = ConnectionState.AUTHENTICATING
        login = await self._login()
        if not login.ok:
            await self._abandon()
            if isinstance(login.error, errors.ActionFailed):
                self.last_error = errors.AuthenticationError(f"Login rejected: {login.error.message}",
                                                             {"username": self.config.username})
                raise self.last_error
            self.last_error = login.error
            raise errors.ConnectionError(f"Login did not complete: {login.error}") from login.error

        self.state = ConnectionState.READY
        self.reconnect_attempts = 0
        self._ready.set()
        if self.config.keepalive_interval > 0:
            self._keepalive_task = loop.create_task(self._keepalive())
        self.logger.info(f"Authenticated as {self.config.username}")
        return login

    async def send_action(
            self,
            action: str,
            fields: Optional[Dict[str, Any]] = None,
            policy: Optional[CompletionPolicy] = None,
            timeout: Optional[float] = None
    ) -> ActionResult:
        if action == "Login":
            allowed = self.state is ConnectionState.AUTHENTICATING
        else:
            allowed = self.state is ConnectionState.READY
        if not allowed or self._writer is None:
            raise errors.ConnectionError(f"Cannot send {action}: connection is {self.state.value}")

        policy = policy or self._response_policy()
        timeout = timeout or self.config.timeout_for(action)
        pending = self._correlator.register(action, policy, timeout)
        data = dict(fields or {})
        data["ActionID"] = pending.action_id
        try:
            request = encode_action(action, data, self.config.encoding)
        except errors.ProtocolError:
            pending.future.cancel()
            raise

        self.logger.debug(f"Send {action} {mask_secrets(data)}")
        try:
            await self._write(request)
        except errors.ConnectionError as e:
            self._correlator.fail(pending.action_id, e)
        return await pending.future

    async def _write(self, data: bytes) -> None:
        async with self._write_lock:
            writer = self._writer
            if writer is None or writer.is_closing():
                raise errors.ConnectionError("Socket is closed")
            try:
                writer.write(data)
                await writer.drain()
            except OSError as e:
                self.last_error = e
                writer.close()
                raise errors.ConnectionError(f"Write failed: {e!r}") from e

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        """
        Reads the socket until it closes and dispatches every frame in order.

        :return: None
        """
        error: Optional[BaseException] = None
        try:
            while True:
                data = await reader.read(READ_CHUNK)
                if not data:
                    break
                self._decoder.feed(data)
                for frame in self._decoder.frames():
                    self._handle_frame(frame)
        except asyncio.CancelledError:
            raise
        except (OSError, ssl.SSLError) as e:
            error = e
            self.logger.error(f"Read failed: {e!r}")

        try:
            self._decoder.eof()
        except errors.TruncatedStream as e:
            self.logger.warning(f"{e}")
        self._lost_task = asyncio.get_running_loop().create_task(self._connection_lost(error))
        self._lost_task.add_done_callback(self._lost_task_done)

    def _lost_task_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.last_error = task.exception()
            self.logger.error(f"Connection cleanup failed: {task.exception()!r}")

    def _handle_frame(self, frame: bytes) -> None:
        try:
            message = parse_frame(frame, self.config.encoding)
        except errors.ProtocolError as e:
            self.logger.warning(f"Skipping unparsable frame: {e}")
            return
        self.logger.debug(f"New message: {message.fields}")

        if message.kind is MessageKind.UNKNOWN:
            self.logger.warning(f"Cannot classify frame {message.raw!r}")
            return
        if self._correlator.dispatch(message):
            return
        if message.kind is MessageKind.EVENT:
            self.router.dispatch(message)
        else:
            self._unmatched_response(message)

    def _unmatched_response(self, message: Message) -> None:
        self.logger.debug(f"Response for unknown ActionID {message.action_id}: {message.name}")

    async def _keepalive(self) -> None:
        while self.state is ConnectionState.READY:
            await asyncio.sleep(self.config.keepalive_interval)
            if self.state is not ConnectionState.READY:
                break
            try:
                result = await self.ping()
            except errors.ConnectionError:
                break
            if isinstance(result.error, errors.QueryTimeout):
                self.logger.warning("Keepalive ping timed out, dropping the connection")
                if self._writer is not None:
                    self._writer.close()
                break
            if not result.ok:
                self.logger.warning(f"Keepalive ping failed: {result.error}")

    async def _connection_lost(self, error: Optional[BaseException]) -> None:
        if self.state in (ConnectionState.CLOSING, ConnectionState.DISCONNECTED) and self._writer is None:
            return
        was_ready = self.state is ConnectionState.READY
        self.state = ConnectionState.CLOSING
        self._ready.clear()
        if error is not None:
            self.last_error = error
        self.logger.warning(f"Connection to {self.host}:{self.port} lost" + (f": {error!r}" if error else ""))

        self._correlator.fail_all(errors.ConnectionError("Connection lost"))
        self._cancel_keepalive()
        await self._close_transport()
        self.state = ConnectionState.DISCONNECTED
        if was_ready and not self._stopped:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped or self.permanently_failed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        max_attempts = self.config.max_reconnect_attempts
        while not self._stopped:
            if self.reconnect_attempts >= max_attempts:
                self.permanently_failed = True
                self._gave_up.set()
                self.logger.error(f"Max reconnection attempts ({max_attempts}) reached, giving up")
                return
            self.reconnect_attempts += 1
            delay = self.config.reconnect_delay_for(self.reconnect_attempts)
            self.logger.info(f"Reconnection attempt {self.reconnect_attempts}/{max_attempts} in {delay}s")
            await asyncio.sleep(delay)
            if self._stopped:
                return
            try:
                await self.connect()
                return
            except errors.AuthenticationError as e:
                self.permanently_failed = True
                self._gave_up.set()
                self.logger.error(f"Reconnection stopped: {e}")
                return
            except errors.ConnectionError as e:
                self.logger.warning(f"Reconnection attempt {self.reconnect_attempts} failed: {e}")

    async def _abandon(self) -> None:
        self._correlator.fail_all(errors.ConnectionError("Connection abandoned"))
        self._cancel_keepalive()
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._read_task = None
        await self._close_transport()
        self.state = ConnectionState.DISCONNECTED

    def _cancel_keepalive(self) -> None:
        if self._keepalive_task is not None and self._keepalive_task is not asyncio.current_task():
            self._keepalive_task.cancel()
        self._keepalive_task = None

    async def _close_transport(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            self.logger.debug(f"Error while closing socket: {e!r}")

    async def stop(self) -> None:
        """
        Logs off and closes the connection. Terminal: no reconnection follows.

        :return: None
        """
        if self._stopped:
            return
        self._stopped = True
        self.logger.info(f"Stopping client for {self.host}:{self.port}")
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()

        if self.state is ConnectionState.READY:
            try:
                await self.logoff(timeout=self.config.timeout_for("Logoff"))
            except errors.ConnectionError as e:
                self.logger.debug(f"Logoff skipped: {e}")
        self.state = ConnectionState.CLOSING
        self._ready.clear()
        await self._abandon()
        self.router.close()

    def health(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "host": self.host,
            "port": self.port,
            "server_banner": self.server_banner,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "permanently_failed": self.permanently_failed,
            "pending_actions": self.pending_actions,
            "last_error": repr(self.last_error) if self.last_error is not None else None,
        }
