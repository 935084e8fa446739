import logging
from typing import Any, Dict, Optional

from ami_monitor.client.tcp_client import TCPClient
from ami_monitor.config import AMIConfig, SyncConfig
from ami_monitor.sync import ChangeSink, ExtensionSynchronizer, MonitoredProvider, StatusStore, CycleReport


class MonitorService:
    """
    Owns one AMI connection and the synchronizer that consumes it.

    Nothing is process-wide: build one service per monitored switch and pass
    it to whoever needs to trigger refreshes or read health.
    """

    def __init__(self, ami_config: AMIConfig, provider: MonitoredProvider, store: StatusStore,
                 sink: ChangeSink, sync_config: Optional[SyncConfig] = None,
                 client: Optional[TCPClient] = None):
        self.logger = logging.getLogger('Monitor Service')
        self.client = client or TCPClient(ami_config)
        self.synchronizer = ExtensionSynchronizer(self.client, provider, store, sink, sync_config)
        self.running = False

    async def start(self) -> None:
        """
        Connects (reconnecting in the background on failure) and starts the
        periodic synchronization.

        :raises AuthenticationError: if the credentials are rejected
        """
        if self.running:
            self.logger.warning("Service already running")
            return
        await self.client.start()
        self.synchronizer.start()
        self.running = True
        self.logger.info("Monitor service started")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        await self.synchronizer.stop()
        await self.client.stop()
        self.logger.info("Monitor service stopped")

    async def refresh(self, wait: bool = False) -> CycleReport:
        return await self.synchronizer.refresh(wait=wait)

    def health(self) -> Dict[str, Any]:
        connection = self.client.health()
        return {
            "running": self.running,
            "healthy": self.running and connection["connected"],
            "connection": connection,
            "sync": self.synchronizer.statistics(),
        }

    async def __aenter__(self) -> 'MonitorService':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
