"""
Extension status model and the mapping of Asterisk hint states.

Asterisk reports an extension hint as a numeric code (``Status``) and, on
newer versions, a name (``StatusText``). Both forms are mapped to one of
three monitoring states.
"""
import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ami_monitor.codec import Message
from ami_monitor.correlator import ActionResult


class ExtensionState(str, enum.Enum):
    ONLINE = 'online'
    OFFLINE = 'offline'
    UNKNOWN = 'unknown'


# code -> (device state name, monitoring state)
STATUS_CODES = {
    '-1': ('UNKNOWN', ExtensionState.UNKNOWN),   # extension not found
    '0': ('NOT_INUSE', ExtensionState.ONLINE),
    '1': ('INUSE', ExtensionState.ONLINE),
    '2': ('BUSY', ExtensionState.ONLINE),
    '4': ('UNAVAILABLE', ExtensionState.OFFLINE),
    '8': ('RINGING', ExtensionState.ONLINE),
    '9': ('RINGINUSE', ExtensionState.ONLINE),  # ringing while in use
    '16': ('ONHOLD', ExtensionState.ONLINE),
}

STATUS_TEXTS = {
    'notinuse': ExtensionState.ONLINE,
    'idle': ExtensionState.ONLINE,
    'inuse': ExtensionState.ONLINE,
    'busy': ExtensionState.ONLINE,
    'ringing': ExtensionState.ONLINE,
    'ringinuse': ExtensionState.ONLINE,
    'onhold': ExtensionState.ONLINE,
    'registered': ExtensionState.ONLINE,
    'unavailable': ExtensionState.OFFLINE,
    'unregistered': ExtensionState.OFFLINE,
    'rejected': ExtensionState.OFFLINE,
    'timeout': ExtensionState.OFFLINE,
}

# raw code stored for an extension the server stopped reporting
ABSENT_CODE = ''

# ExtensionState answers Success with this code when no hint exists
NOT_FOUND_CODE = '-1'

EXTENSION_EVENTS = ('ExtensionStatus', 'ExtensionState')
EXTENSION_KEYS = ('Exten', 'Extension')


def map_status(raw_code: Any) -> ExtensionState:
    """
    Maps a raw hint status, numeric or textual, to a monitoring state.

    :param raw_code: Value of the ``Status`` field
    :return: The state, UNKNOWN for anything unrecognized
    """
    code = str(raw_code).strip() if raw_code is not None else ''
    if code in STATUS_CODES:
        return STATUS_CODES[code][1]
    text = code.replace(' ', '').replace('_', '').replace('&', '').lower()
    return STATUS_TEXTS.get(text, ExtensionState.UNKNOWN)


def device_state_name(raw_code: Any) -> str:
    code = str(raw_code).strip() if raw_code is not None else ''
    if code in STATUS_CODES:
        return STATUS_CODES[code][0]
    return 'UNKNOWN'


@dataclass(frozen=True)
class ExtensionReport:
    """One observation of an extension as reported by the server."""
    exten: str
    status: str
    context: str = ''
    status_text: Optional[str] = None

    @property
    def state(self) -> ExtensionState:
        return map_status(self.status)

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> Optional['ExtensionReport']:
        exten = next((fields[key] for key in EXTENSION_KEYS if fields.get(key)), None)
        if exten is None or fields.get('Status') is None:
            return None
        return cls(exten=exten, status=fields['Status'].strip(), context=fields.get('Context', ''),
                   status_text=fields.get('StatusText'))


@dataclass(frozen=True)
class ExtensionStatus:
    """
    Last known state of a monitored extension. Records are replaced, never
    mutated in place.
    """
    id: str
    raw_code: str
    state: ExtensionState
    context: str
    last_seen: datetime
    last_changed: datetime
    status_text: Optional[str] = field(default=None, compare=False)

    @property
    def device_state(self) -> str:
        return device_state_name(self.raw_code)

    def differs_from(self, state: ExtensionState, raw_code: str, context: str) -> bool:
        return self.state != state or self.raw_code != raw_code or self.context != context

    def updated(self, state: ExtensionState, raw_code: str, context: str, now: datetime,
                status_text: Optional[str] = None) -> 'ExtensionStatus':
        return replace(self, state=state, raw_code=raw_code, context=context,
                       last_seen=now, last_changed=now, status_text=status_text)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raw_code": self.raw_code,
            "state": self.state.value,
            "device_state": self.device_state,
            "status_text": self.status_text,
            "context": self.context,
            "last_seen": self.last_seen.isoformat(),
            "last_changed": self.last_changed.isoformat(),
        }


@dataclass(frozen=True)
class StatusChange:
    """Notification payload for one extension whose status changed."""
    current: ExtensionStatus
    previous: Optional[ExtensionStatus] = None
    reason: str = 'query'

    @property
    def id(self) -> str:
        return self.current.id

    def as_dict(self) -> Dict[str, Any]:
        return {
            "extension": self.current.id,
            "reason": self.reason,
            "previous": self.previous.as_dict() if self.previous is not None else None,
            "current": self.current.as_dict(),
        }


def _records(headers: Iterable[tuple]) -> List[Dict[str, str]]:
    # an aggregated block repeats Exten/Status/Context once per extension
    records: List[Dict[str, str]] = []
    current: Optional[Dict[str, str]] = None
    for key, value in headers:
        if key in EXTENSION_KEYS:
            current = {key: value}
            records.append(current)
        elif current is not None:
            current[key] = value
    return records


def parse_extension_reports(result: ActionResult) -> List[ExtensionReport]:
    """
    Extracts extension reports from an ExtensionState or ExtensionStateList
    result, whichever shape the server used: one event per extension, or a
    single aggregated response block.

    :param result: The action result
    :return: Reports in server order, one per extension (the last one wins)
    """
    reports: Dict[str, ExtensionReport] = {}

    for event in result.events:
        if event.name in EXTENSION_EVENTS:
            report = ExtensionReport.from_fields(event.fields)
            if report is not None:
                reports[report.exten] = report

    response: Optional[Message] = result.response
    if not reports and response is not None and response.name in ('Success', 'Follows'):
        for fields in _records(response.headers):
            report = ExtensionReport.from_fields(fields)
            if report is not None:
                reports[report.exten] = report

    return list(reports.values())


def parse_device_states(result: ActionResult) -> Dict[str, str]:
    """
    Device name to state for a DeviceStateList result.

    :param result: The action result
    :return: Mapping of device to state name
    """
    devices = {}
    for event in result.events:
        if event.name == 'DeviceStateChange' and event.get('Device'):
            devices[event['Device']] = event.get('State', 'UNKNOWN')
    return devices
