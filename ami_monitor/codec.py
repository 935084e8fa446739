import enum
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ami_monitor.errors import ProtocolError, TruncatedStream

EOL = b"\r\n"
TERMINATOR = b"\r\n\r\n"


class FrameDecoder:
    """
    Splits the inbound byte stream into frames.

    A frame is everything up to a blank line. Chunks may cut a frame, or the
    terminator itself, at any byte; the incomplete tail stays buffered and the
    next scan resumes where the previous one stopped.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._start = 0
        self._scan_pos = 0

    def feed(self, data: bytes) -> None:
        """
        Appends a chunk received from the transport.

        :param data: Raw bytes, any size
        :return: None
        """
        self._buffer.extend(data)

    def frames(self) -> Iterator[bytes]:
        """
        Yields every complete frame currently buffered. Safe to call again after
        the next :meth:`feed`, iteration continues where it stopped.

        :return: Iterator over raw frames, terminator excluded
        """
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame

    def next_frame(self) -> Optional[bytes]:
        while True:
            idx = self._buffer.find(TERMINATOR, self._scan_pos)
            if idx == -1:
                # the terminator may start in the last 3 bytes
                self._scan_pos = max(self._start, len(self._buffer) - len(TERMINATOR) + 1)
                self._compact()
                return None
            frame = bytes(self._buffer[self._start:idx])
            self._start = idx + len(TERMINATOR)
            self._scan_pos = self._start
            if frame.strip():
                return frame

    def _compact(self) -> None:
        if self._start:
            del self._buffer[:self._start]
            self._scan_pos -= self._start
            self._start = 0

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet emitted as a frame."""
        return len(self._buffer) - self._start

    def eof(self) -> None:
        """
        Signals the end of the stream. A partial frame is never emitted.

        :raises TruncatedStream: if a non-empty partial frame is buffered
        """
        tail = bytes(self._buffer[self._start:])
        self._buffer.clear()
        self._start = self._scan_pos = 0
        if tail.strip():
            raise TruncatedStream("Connection closed mid-frame", {"pending_bytes": len(tail)})


class MessageKind(enum.Enum):
    RESPONSE = 'Response'
    EVENT = 'Event'
    UNKNOWN = 'Unknown'


class Message:
    """
    One classified frame.

    ``fields`` keeps the last value of a repeated key, ``headers`` keeps every
    key/value pair in arrival order (aggregated list responses repeat keys),
    ``output`` holds lines that are not ``Key: Value`` pairs.
    """

    __slots__ = ('kind', 'fields', 'headers', 'output', 'raw')

    def __init__(self, kind: MessageKind, fields: Dict[str, str],
                 headers: List[Tuple[str, str]], output: List[str], raw: str):
        self.kind = kind
        self.fields = fields
        self.headers = headers
        self.output = output
        self.raw = raw

    @property
    def action_id(self) -> Optional[str]:
        return self.fields.get('ActionID')

    @property
    def name(self) -> Optional[str]:
        """The event name for events, the response value for responses."""
        if self.kind is MessageKind.EVENT:
            return self.fields.get('Event')
        if self.kind is MessageKind.RESPONSE:
            return self.fields.get('Response')
        return None

    @property
    def is_event(self) -> bool:
        return self.kind is MessageKind.EVENT

    @property
    def is_response(self) -> bool:
        return self.kind is MessageKind.RESPONSE

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.fields.get(key, default)

    def __getitem__(self, key: str) -> str:
        return self.fields[key]

    def __contains__(self, key: str) -> bool:
        return key in self.fields

    def __repr__(self) -> str:
        return f"Message({self.kind.value}, {self.fields!r})"


def parse_frame(frame: bytes, encoding: str = 'utf-8') -> Message:
    """
    Builds a :class:`Message` out of a raw frame.

    Lines split on the first ``": "`` only, so values may contain colons.
    A frame with a ``Response`` field is a response, one with an ``Event``
    field an event, anything else is classified unknown.

    :param frame: Raw frame without its terminator
    :param encoding: Wire encoding
    :return: The classified message
    """
    try:
        text = frame.decode(encoding, errors='replace')
    except LookupError as e:
        raise ProtocolError(f"Unknown encoding {encoding!r}") from e

    fields: Dict[str, str] = {}
    headers: List[Tuple[str, str]] = []
    output: List[str] = []
    for line in text.split('\r\n'):
        if not line.strip():
            continue
        key, sep, value = line.partition(': ')
        if not sep:
            if line.endswith(':') and ' ' not in line:
                key, value = line[:-1], ''
            else:
                output.append(line)
                continue
        fields[key] = value
        headers.append((key, value))

    if 'Response' in fields:
        kind = MessageKind.RESPONSE
    elif 'Event' in fields:
        kind = MessageKind.EVENT
    else:
        kind = MessageKind.UNKNOWN
    return Message(kind, fields, headers, output, text)


def encode_action(action: str, fields: Mapping[str, Any], encoding: str = 'utf-8') -> bytes:
    """
    Serializes an outgoing action.

    Keys may carry an ``[n]`` suffix so the same header can be repeated, the
    suffix is stripped on the wire. ``None`` values are skipped.

    :param action: Action name
    :param fields: Action fields, ``ActionID`` included
    :param encoding: Wire encoding
    :return: The encoded action, blank-line terminated
    """
    lines = [f"Action: {action}"]
    for key, value in fields.items():
        if value is None:
            continue
        key_name = re.sub(r"\[\d+]", "", key)
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        value = str(value)
        if '\r' in value or '\n' in value or '\r' in key_name or '\n' in key_name:
            raise ProtocolError(f"Line break in field {key_name!r} of action {action}")
        lines.append(f"{key_name}: {value}")
    return ('\r\n'.join(lines) + '\r\n\r\n').encode(encoding)


def mask_secrets(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: ('***' if key.lower() == 'secret' else value) for key, value in fields.items()}
