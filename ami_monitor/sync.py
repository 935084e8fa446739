"""
Periodic synchronization of extension states.

Each cycle reads the monitored extensions from an external provider, queries
their hint state over AMI, compares the mapped result with the last stored
status and writes (and announces) only what changed. Extensions the server no
longer reports go offline once; extensions whose query failed keep their
previous status until a later cycle answers for them.
"""
import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from ami_monitor.base import AMIClientBase
from ami_monitor.config import SyncConfig, SyncMode
from ami_monitor.errors import ActionFailed, AMIError, BusyError
from ami_monitor.router import Subscription
from ami_monitor.status import (ABSENT_CODE, NOT_FOUND_CODE, ExtensionReport, ExtensionState, ExtensionStatus,
                                StatusChange, parse_extension_reports)


class MonitoredProvider(Protocol):
    async def monitored_extensions(self) -> List[str]:
        ...


class StatusStore(Protocol):
    async def get(self, extension: str) -> Optional[ExtensionStatus]:
        ...

    async def save(self, status: ExtensionStatus) -> None:
        ...


class ChangeSink(Protocol):
    async def publish(self, change: StatusChange) -> None:
        ...


class StaticProvider:
    def __init__(self, extensions: Iterable[str]):
        self.extensions = list(extensions)

    async def monitored_extensions(self) -> List[str]:
        return list(self.extensions)


class MemoryStore:
    """Status store kept in a dict; counts writes."""

    def __init__(self, statuses: Iterable[ExtensionStatus] = ()):
        self.statuses: Dict[str, ExtensionStatus] = {status.id: status for status in statuses}
        self.writes = 0

    async def get(self, extension: str) -> Optional[ExtensionStatus]:
        return self.statuses.get(extension)

    async def save(self, status: ExtensionStatus) -> None:
        self.statuses[status.id] = status
        self.writes += 1


class SyncState(enum.Enum):
    IDLE = 'idle'
    QUERYING = 'querying'
    DIFFING = 'diffing'


class CycleReport:
    def __init__(self, started_at: datetime):
        self.started_at = started_at
        self.finished_at: Optional[datetime] = None
        self.monitored: List[str] = []
        self.changed: List[str] = []
        self.unchanged: List[str] = []
        self.absent: List[str] = []
        self.failed: List[str] = []
        self.error: Optional[AMIError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "monitored": len(self.monitored),
            "changed": list(self.changed),
            "unchanged": len(self.unchanged),
            "absent": list(self.absent),
            "failed": list(self.failed),
            "error": str(self.error) if self.error else None,
        }

    def __repr__(self) -> str:
        return (f"CycleReport(monitored={len(self.monitored)}, changed={self.changed}, "
                f"absent={self.absent}, failed={self.failed}, error={self.error!r})")


class QueryOutcome:
    """What one round of queries said about the monitored extensions."""

    def __init__(self):
        self.present: Dict[str, ExtensionReport] = {}
        self.absent: Set[str] = set()
        self.failed: Set[str] = set()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExtensionSynchronizer:
    """
    Drives the Idle -> Querying -> Diffing -> Idle cycle.

    Only one cycle runs at a time: a periodic tick that finds a cycle running
    is skipped, an on-demand :meth:`refresh` is rejected with
    :class:`BusyError` or waits for the running cycle.
    """

    def __init__(self, client: AMIClientBase, provider: MonitoredProvider, store: StatusStore,
                 sink: ChangeSink, config: Optional[SyncConfig] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.logger = logging.getLogger('Extension Sync')
        self.client = client
        self.provider = provider
        self.store = store
        self.sink = sink
        self.config = config or SyncConfig()
        self._clock = clock
        self.state = SyncState.IDLE
        self.successful_cycles = 0
        self.failed_cycles = 0
        self.failed_queries = 0
        self.last_cycle_at: Optional[datetime] = None
        self.last_report: Optional[CycleReport] = None
        self._monitored: Set[str] = set()
        self._apply_lock = asyncio.Lock()
        self._cycle_done: Optional[asyncio.Future] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    @property
    def busy(self) -> bool:
        return self.state is not SyncState.IDLE

    async def run_cycle(self) -> CycleReport:
        """
        Runs one synchronization cycle.

        :return: The cycle report; AMI failures are recorded in ``report.error``
        :raises BusyError: if a cycle is already running
        """
        if self.busy:
            raise BusyError("A synchronization cycle is already running", {"state": self.state.value})
        self.state = SyncState.QUERYING
        self._cycle_done = asyncio.get_running_loop().create_future()
        report = CycleReport(self._clock())
        self.last_cycle_at = report.started_at
        try:
            extensions = list(dict.fromkeys(await self.provider.monitored_extensions()))
            report.monitored = extensions
            self._monitored = set(extensions)
            self.logger.info(f"Cycle started for {len(extensions)} extensions ({self.config.mode.value})")

            if self.config.mode is SyncMode.BULK:
                outcome = await self._query_bulk(extensions)
            else:
                outcome = await self._query_individual(extensions)

            self.state = SyncState.DIFFING
            await self._diff(extensions, outcome, report)
            self.successful_cycles += 1
        except AMIError as e:
            report.error = e
            self.failed_cycles += 1
            self.logger.error(f"Cycle failed: {e}")
        finally:
            report.finished_at = self._clock()
            self.last_report = report
            self.state = SyncState.IDLE
            if not self._cycle_done.done():
                self._cycle_done.set_result(report)

        self.logger.info(f"Cycle finished: {len(report.changed)} changed, {len(report.unchanged)} unchanged, "
                         f"{len(report.absent)} absent, {len(report.failed)} failed")
        if report.changed:
            self.logger.info(f"Changed extensions: {', '.join(report.changed)}")
        if report.failed:
            self.logger.warning(f"Extensions left untouched after failed queries: {', '.join(report.failed)}")
        return report

    async def refresh(self, wait: bool = False) -> CycleReport:
        """
        On-demand cycle.

        :param wait: If a cycle is running, wait for it and return its report
            instead of raising
        :return: The cycle report
        :raises BusyError: if a cycle is running and ``wait`` is False
        """
        if self.busy:
            if not wait or self._cycle_done is None:
                raise BusyError("A synchronization cycle is already running", {"state": self.state.value})
            self.logger.info("Refresh requested mid-cycle, waiting for the running cycle")
            return await asyncio.shield(self._cycle_done)
        self.logger.info("Manual refresh triggered")
        return await self.run_cycle()

    def _timeout(self) -> Optional[float]:
        return self.config.query_timeout

    async def _query_bulk(self, extensions: List[str]) -> QueryOutcome:
        outcome = QueryOutcome()
        result = await self.client.extension_state_list(self.config.context, timeout=self._timeout())

        reports: Dict[str, ExtensionReport] = {}
        for report in parse_extension_reports(result):
            existing = reports.get(report.exten)
            if existing is not None and existing.context == self.config.context:
                continue
            reports[report.exten] = report
        self.logger.debug(f"ExtensionStateList returned {len(reports)} extensions "
                          f"in {result.elapsed:.3f}s ({result.completion.value})")

        for exten in extensions:
            report = reports.get(exten)
            if report is not None and report.status == NOT_FOUND_CODE:
                outcome.absent.add(exten)
            elif report is not None:
                outcome.present[exten] = report
            elif result.ok:
                outcome.absent.add(exten)
            else:
                outcome.failed.add(exten)

        if not result.ok:
            self.failed_queries += 1
            self.logger.warning(f"ExtensionStateList incomplete ({result.error}), "
                                f"using {len(outcome.present)} partial results")
        return outcome

    async def _query_one(self, exten: str):
        try:
            return await self.client.extension_state(exten, self.config.context, timeout=self._timeout())
        except AMIError as e:
            return e

    async def _query_individual(self, extensions: List[str]) -> QueryOutcome:
        outcome = QueryOutcome()
        results = await asyncio.gather(*(self._query_one(exten) for exten in extensions))
        for exten, result in zip(extensions, results):
            if isinstance(result, AMIError):
                error = result
            elif result.ok:
                reports = parse_extension_reports(result)
                if reports and reports[0].status == NOT_FOUND_CODE:
                    outcome.absent.add(exten)
                    continue
                if reports:
                    outcome.present[exten] = reports[0]
                    continue
                error = None
            else:
                error = result.error

            if isinstance(error, ActionFailed):
                outcome.absent.add(exten)
            else:
                outcome.failed.add(exten)
                self.failed_queries += 1
                self.logger.warning(f"ExtensionState {exten} failed: {error or 'no status in response'}")
        return outcome

    async def _diff(self, extensions: List[str], outcome: QueryOutcome, report: CycleReport) -> None:
        for exten in extensions:
            if exten in outcome.failed:
                report.failed.append(exten)
                continue
            if exten in outcome.present:
                changed = await self._apply_report(outcome.present[exten], 'query')
            else:
                changed = await self._apply_absence(exten)
                if changed is True:
                    report.absent.append(exten)
            if changed is None:
                report.failed.append(exten)
            elif changed:
                report.changed.append(exten)
            else:
                report.unchanged.append(exten)

    async def _load(self, exten: str) -> Tuple[bool, Optional[ExtensionStatus]]:
        try:
            return True, await self.store.get(exten)
        except Exception:
            self.logger.exception(f"Failed to load status of extension {exten}")
            return False, None

    async def _apply_report(self, report: ExtensionReport, reason: str) -> Optional[bool]:
        async with self._apply_lock:
            loaded, stored = await self._load(report.exten)
            if not loaded:
                return None
            state = report.state
            if stored is not None and not stored.differs_from(state, report.status, report.context):
                return False
            now = self._clock()
            if stored is None:
                current = ExtensionStatus(report.exten, report.status, state, report.context, now, now,
                                          report.status_text)
            else:
                current = stored.updated(state, report.status, report.context, now, report.status_text)
            return await self._write(StatusChange(current, stored, reason))

    async def _apply_absence(self, exten: str) -> Optional[bool]:
        async with self._apply_lock:
            loaded, stored = await self._load(exten)
            if not loaded:
                return None
            if stored is not None and stored.state is ExtensionState.OFFLINE:
                return False
            now = self._clock()
            if stored is None:
                current = ExtensionStatus(exten, ABSENT_CODE, ExtensionState.OFFLINE, self.config.context, now, now)
            else:
                current = stored.updated(ExtensionState.OFFLINE, ABSENT_CODE, stored.context, now)
            self.logger.info(f"Extension {exten} missing from the server response, marking offline")
            return await self._write(StatusChange(current, stored, 'absent'))

    async def _write(self, change: StatusChange) -> Optional[bool]:
        try:
            await self.store.save(change.current)
        except Exception:
            self.logger.exception(f"Failed to store status of extension {change.id}")
            return None
        previous = change.previous.state.value if change.previous is not None else None
        self.logger.info(f"Extension {change.id}: {previous} -> {change.current.state.value} "
                         f"(code {change.current.raw_code!r})")
        try:
            await self.sink.publish(change)
        except Exception:
            self.logger.exception(f"Failed to publish change of extension {change.id}")
        return True

    async def _watch_events(self, subscription: Subscription) -> None:
        async for event in subscription:
            report = ExtensionReport.from_fields(event.fields)
            if report is None or report.exten not in self._monitored:
                continue
            try:
                if report.status == NOT_FOUND_CODE:
                    await self._apply_absence(report.exten)
                else:
                    await self._apply_report(report, 'event')
            except Exception:
                self.logger.exception(f"Failed to apply event for extension {report.exten}")

    def _tick(self) -> None:
        if self.busy:
            self.logger.warning(f"Previous cycle still {self.state.value}, skipping this tick")
            return
        self._cycle_task = asyncio.get_running_loop().create_task(self._guarded_cycle())

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_cycle()
        except BusyError:
            self.logger.warning("Cycle already running, skipping this tick")
        except Exception:
            self.logger.exception("Synchronization cycle crashed")

    async def _run_periodic(self) -> None:
        await asyncio.sleep(self.config.initial_delay)
        while True:
            self._tick()
            await asyncio.sleep(self.config.poll_interval)

    def start(self) -> None:
        """
        Starts the periodic timer and, if enabled, the live event consumer.

        :return: None
        """
        loop = asyncio.get_running_loop()
        if self._periodic_task is None:
            self.logger.info(f"Periodic extension checks every {self.config.poll_interval}s")
            self._periodic_task = loop.create_task(self._run_periodic())
        if self.config.watch_events and self._watch_task is None:
            events = (self.client.config.events or '').lower()
            if not events or events in ('off', 'no', 'false', '0'):
                self.logger.warning(f"Login events are {self.client.config.events!r}, the server will not "
                                    f"send live ExtensionStatus events; set AMIConfig.events to include 'call'")
            self._subscription = self.client.subscribe(('ExtensionStatus',))
            self._watch_task = loop.create_task(self._watch_events(self._subscription))

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        tasks = [task for task in (self._periodic_task, self._watch_task, self._cycle_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic_task = self._watch_task = self._cycle_task = None
        self.logger.info("Periodic extension checks stopped")

    def statistics(self) -> dict:
        return {
            "state": self.state.value,
            "mode": self.config.mode.value,
            "poll_interval": self.config.poll_interval,
            "monitored": len(self._monitored),
            "successful_cycles": self.successful_cycles,
            "failed_cycles": self.failed_cycles,
            "failed_queries": self.failed_queries,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_report": self.last_report.as_dict() if self.last_report else None,
        }
