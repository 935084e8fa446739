"""
Пакет ami-extension-monitor следит за состоянием внутренних номеров Asterisk
через Asterisk Manager Interface, используя asyncio.

Для начала работы нужно включить AMI прописав конфигурацию в файл /etc/asterisk/manager.conf:

```
; Включите AMI и попросите его принимать соединения только с localhost.
[general]
enabled = yes
bindaddr = 127.0.0.1
; Создайте учетную запись «monitor» с паролем «secret»
[monitor]
secret = secret
read = system,call,reporting ; ExtensionStatus приходит в классе call
write = system,call,reporting
```

Основные части:
    - TCPClient: постоянное TCP-соединение, авторизация, keepalive и переподключение.
    - ExtensionSynchronizer: периодический опрос состояний и запись только изменений.
    - MonitorService: связывает клиента и синхронизатор, отдает health-отчет.

Состояния номеров запрашиваются действием ExtensionStateList (или ExtensionState
по одному номеру), поэтому у номеров должны быть hint в контексте из SyncConfig.context.

# License: Apache License 2.0
"""
from ami_monitor.client.tcp_client import ConnectionState, TCPClient
from ami_monitor.config import AMIConfig, SyncConfig, SyncMode
from ami_monitor.correlator import ActionResult, Completion, CompletionPolicy
from ami_monitor.errors import (AMIError, ActionFailed, AuthenticationError, BusyError, ConnectionError,
                                ProtocolError, QueryTimeout, ReconnectExhausted, TruncatedStream)
from ami_monitor.service import MonitorService
from ami_monitor.status import ExtensionState, ExtensionStatus, StatusChange, map_status
from ami_monitor.sync import ExtensionSynchronizer, MemoryStore, StaticProvider

__all__ = [
    'ActionFailed', 'ActionResult', 'AMIConfig', 'AMIError', 'AuthenticationError', 'BusyError',
    'Completion', 'CompletionPolicy', 'ConnectionError', 'ConnectionState', 'ExtensionState',
    'ExtensionStatus', 'ExtensionSynchronizer', 'MemoryStore', 'MonitorService', 'ProtocolError',
    'QueryTimeout', 'ReconnectExhausted', 'StaticProvider', 'StatusChange', 'SyncConfig', 'SyncMode',
    'TCPClient', 'TruncatedStream', 'map_status',
]
