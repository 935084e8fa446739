"""Fixtures shared by the test suite: a scripted in-process AMI server."""
import asyncio
from typing import Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from ami_monitor.config import AMIConfig

USERNAME = "monitor"
SECRET = "s3cret"

Item = Union[str, float]
Handler = Callable[[Dict[str, str]], List[Item]]


def frame(fields: Dict[str, str]) -> str:
    return "".join(f"{key}: {value}\r\n" for key, value in fields.items()) + "\r\n"


def extension_status_event(action_id: Optional[str], exten: str, status: str,
                           context: str = "from-internal") -> str:
    fields = {"Event": "ExtensionStatus"}
    if action_id is not None:
        fields["ActionID"] = action_id
    fields.update({"Exten": exten, "Context": context, "Hint": f"PJSIP/{exten}", "Status": status})
    return frame(fields)


def extension_list_handler(extensions: Dict[str, str]) -> Handler:
    """ExtensionStateList answered with one event per extension and a completion event."""
    def handler(fields):
        aid = fields["ActionID"]
        items = [frame({"Response": "Success", "ActionID": aid, "EventList": "start",
                        "Message": "Extension Statuses will follow"})]
        items += [extension_status_event(aid, exten, status) for exten, status in extensions.items()]
        items.append(frame({"Event": "ExtensionStateListComplete", "ActionID": aid,
                            "EventList": "Complete", "ListItems": str(len(extensions))}))
        return items
    return handler


def aggregated_list_handler(extensions: Dict[str, str]) -> Handler:
    """ExtensionStateList answered with a single response block."""
    def handler(fields):
        lines = {"Response": "Success", "ActionID": fields["ActionID"]}
        body = frame(lines)[:-2]
        for exten, status in extensions.items():
            body += f"Extension: {exten}\r\nStatus: {status}\r\nContext: from-internal\r\n"
        return [body + "\r\n"]
    return handler


def extension_state_handler(extensions: Dict[str, str]) -> Handler:
    """ExtensionState; an extension without a hint is answered with Status -1, as Asterisk does."""
    def handler(fields):
        exten = fields["Exten"]
        if exten not in extensions:
            return [frame({"Response": "Success", "ActionID": fields["ActionID"], "Message": "Extension Status",
                           "Exten": exten, "Context": fields.get("Context", ""), "Hint": "",
                           "Status": "-1", "StatusText": "Unknown"})]
        return [frame({"Response": "Success", "ActionID": fields["ActionID"], "Message": "Extension Status",
                       "Exten": exten, "Context": fields.get("Context", ""), "Hint": f"PJSIP/{exten}",
                       "Status": extensions[exten], "StatusText": "Idle"})]
    return handler


class FakeAMIServer:
    def __init__(self, username: str = USERNAME, secret: str = SECRET):
        self.username = username
        self.secret = secret
        self.banner = b"Asterisk Call Manager/7.0.3\r\n"
        self.handlers: Dict[str, Handler] = {
            "Login": self._login,
            "Ping": lambda f: [frame({"Response": "Success", "ActionID": f["ActionID"], "Ping": "Pong"})],
            "Logoff": lambda f: [frame({"Response": "Goodbye", "ActionID": f["ActionID"],
                                        "Message": "Thanks for all the fish."})],
        }
        self.received: List[Dict[str, str]] = []
        self.raw_received: List[bytes] = []
        self.writers: List[asyncio.StreamWriter] = []
        self.connections = 0
        self.server: Optional[asyncio.AbstractServer] = None
        self.port = 0

    def _login(self, fields):
        if fields.get("Username") == self.username and fields.get("Secret") == self.secret:
            return [frame({"Response": "Success", "ActionID": fields["ActionID"],
                           "Message": "Authentication accepted"}),
                    frame({"Event": "FullyBooted", "Privilege": "system,all", "Status": "Fully Booted"})]
        return [frame({"Response": "Error", "ActionID": fields["ActionID"], "Message": "Authentication failed"})]

    def actions(self, name: str) -> List[Dict[str, str]]:
        return [fields for fields in self.received if fields.get("Action") == name]

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self.writers.append(writer)
        writer.write(self.banner)
        await writer.drain()
        while True:
            try:
                data = await reader.readuntil(b"\r\n\r\n")
            except (asyncio.IncompleteReadError, ConnectionError):
                break
            self.raw_received.append(data)
            fields = dict(line.split(": ", 1) for line in data.decode().split("\r\n") if ": " in line)
            self.received.append(fields)
            handler = self.handlers.get(fields.get("Action"))
            items = handler(fields) if handler is not None else [
                frame({"Response": "Error", "ActionID": fields.get("ActionID", ""), "Message": "Invalid/unknown command"})]
            try:
                for item in items:
                    if isinstance(item, float):
                        await asyncio.sleep(item)
                    else:
                        writer.write(item.encode())
                        await writer.drain()
            except ConnectionError:
                break
            if fields.get("Action") == "Logoff":
                break
        writer.close()

    async def push(self, text: str) -> None:
        for writer in self.writers:
            if not writer.is_closing():
                writer.write(text.encode())
                await writer.drain()

    async def drop_connections(self) -> None:
        for writer in self.writers:
            writer.close()
        self.writers = []

    async def close(self) -> None:
        await self.drop_connections()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


@pytest_asyncio.fixture
async def ami_server():
    server = FakeAMIServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def ami_config(ami_server: FakeAMIServer) -> AMIConfig:
    return AMIConfig(
        host="127.0.0.1",
        port=ami_server.port,
        username=USERNAME,
        secret=SECRET,
        keepalive_interval=0,
        grace_period=0.05,
        reconnect_delay=0.01,
        max_reconnect_attempts=3,
        connect_timeout=2.0,
        auth_timeout=2.0,
    )
