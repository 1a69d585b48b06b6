"""
Watch mode - backs up directories automatically when they change.

Each watched path runs its own state machine:

    Idle --change--> PendingChange --debounce elapsed--> BackingUp --done--> Idle
                     PendingChange --change--> PendingChange (debounce restarts)
                                               BackingUp --change--> (pending flag)
                                               BackingUp --done, flag set--> PendingChange

A controller task per path owns the debounce timer and reads the path's
queue; the backup itself runs in a worker thread and posts "done" back on
the same queue. At most one backup per path runs at a time, and any number
of changes during a backup cause exactly one follow-up backup.

Filesystem notifications come from a watchdog observer thread and are
handed to the event loop with call_soon_threadsafe.
"""

import asyncio
import enum
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler
)
from watchdog.observers import Observer

from restorekit.backup.compression import iter_source_files, should_exclude
from restorekit.config import Settings, normalize_path
from restorekit.errors import BackupCancelled

logger = logging.getLogger(__name__)

_CHANGE = 'change'
_DONE = 'done'

_TRIGGER_EVENTS = (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED)

BackupFn = Callable[[str, Callable[[], None]], Any]


class WatchState(enum.Enum):
    IDLE = 'idle'
    PENDING_CHANGE = 'pending_change'
    BACKING_UP = 'backing_up'


class _PathWatch:
    """Per-path channel and state."""

    def __init__(self, path: str):
        self.path = path
        self.queue: asyncio.Queue = asyncio.Queue()
        self.state = WatchState.IDLE
        self.pending = False
        self.controller: Optional[asyncio.Task] = None
        self.getter: Optional[asyncio.Future] = None
        self.backup_task: Optional[asyncio.Task] = None
        self.backups_started = 0

    def getter_ready(self) -> bool:
        """Whether a message was read off the queue but not yet handled."""
        return self.getter is not None and self.getter.done()


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events (observer thread) to the orchestrator loop."""

    def __init__(self, orchestrator: 'WatchOrchestrator'):
        super().__init__()
        self.orchestrator = orchestrator

    def on_any_event(self, event):
        if event.event_type not in _TRIGGER_EVENTS:
            return
        # Directory mtime updates duplicate the events of their files
        if event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
            return

        self.orchestrator.notify_threadsafe(event.src_path)
        dest_path = getattr(event, 'dest_path', None)
        if dest_path:
            self.orchestrator.notify_threadsafe(dest_path)


class WatchOrchestrator:
    """
    Watches the configured directories and triggers debounced backups.

    Created by the entry point and driven from an asyncio event loop:
    ``await start()``, then ``await stop()``.
    """

    def __init__(
        self,
        settings: Settings,
        backup_fn: BackupFn,
        state=None,
        debounce_seconds: Optional[float] = None,
        ignore_paths: Optional[Iterable[str]] = None,
        observer_factory: Optional[Callable[[], Any]] = Observer
    ):
        """
        Args:
            settings: Resolved settings (watch targets, exclusions)
            backup_fn: Called in a worker thread as backup_fn(path, cancellation_check)
            state: StateStore used for startup reconciliation
            debounce_seconds: Quiet period before a backup (default: settings)
            ignore_paths: Directories whose events are ignored (temp/state dirs)
            observer_factory: Builds the watchdog observer; None disables
                filesystem watching (changes come only from ``notify``)
        """
        self.settings = settings
        self.backup_fn = backup_fn
        self.state = state
        self.debounce_seconds = settings.debounce_seconds if debounce_seconds is None else debounce_seconds
        self.ignore_paths = [normalize_path(p) for p in ignore_paths or []]
        self.observer_factory = observer_factory

        self._watches: Dict[str, _PathWatch] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer = None
        self._cancel_event = threading.Event()
        self._accepting = False
        self._started = False

    @property
    def paths(self) -> List[str]:
        return list(self._watches)

    def state_of(self, path: str) -> WatchState:
        return self._watches[normalize_path(path)].state

    def backups_started(self, path: str) -> int:
        return self._watches[normalize_path(path)].backups_started

    async def start(self, reconcile: bool = True):
        """
        Begin watching every configured target that exists.

        Args:
            reconcile: Queue an initial backup for paths that have no record
                or changed since their last recorded backup
        """
        if self._started:
            return

        self._loop = asyncio.get_running_loop()
        self._cancel_event.clear()

        for target in self.settings.watch_targets:
            path = normalize_path(target.path)
            if path in self._watches:
                continue
            if not os.path.isdir(path):
                logger.warning(f"Watch target does not exist, skipping: {path}")
                continue

            watch = _PathWatch(path)
            watch.controller = asyncio.create_task(self._control(watch))
            self._watches[path] = watch

        if self.observer_factory is not None and self._watches:
            self._observer = self.observer_factory()
            handler = _ChangeHandler(self)
            for path in self._watches:
                self._observer.schedule(handler, path, recursive=True)
            self._observer.start()

        self._accepting = True
        self._started = True
        logger.info(f"Watching {len(self._watches)} path(s) (debounce {self.debounce_seconds}s)")

        if reconcile and self.state is not None:
            for path in list(self._watches):
                if await asyncio.to_thread(self._needs_backup, path):
                    logger.info(f"Changes since last backup detected: {path}")
                    self.notify(path)

    def notify(self, path: str) -> bool:
        """
        Report a change at path. Must be called on the event loop thread.

        Returns:
            True if the change was routed to a watched path
        """
        if not self._accepting:
            return False

        changed = normalize_path(path)
        root = self._route(changed)
        if root is None or self._is_ignored(changed, root):
            return False

        self._watches[root].queue.put_nowait(_CHANGE)
        return True

    def notify_threadsafe(self, path: str):
        """Report a change from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self._accepting:
            return
        try:
            loop.call_soon_threadsafe(self.notify, path)
        except RuntimeError as e:
            logger.debug(f"Dropped change for {path} during shutdown: {e}")

    def _route(self, path: str) -> Optional[str]:
        """Deepest watched root containing path."""
        best = None
        for root in self._watches:
            if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
                if best is None or len(root) > len(best):
                    best = root
        return best

    def _is_ignored(self, path: str, root: str) -> bool:
        for ignored in self.ignore_paths + self.settings.excluded_paths:
            if path == ignored or path.startswith(ignored + os.sep):
                return True
        if path == root:
            return False
        return should_exclude(os.path.relpath(path, root), self.settings.excluded_patterns)

    def _needs_backup(self, path: str) -> bool:
        last = self.state.last_record(path)
        if last is None:
            return True

        for full, _, _ in iter_source_files(
            path,
            self.settings.excluded_patterns,
            self.settings.excluded_paths
        ):
            try:
                modified = datetime.fromtimestamp(os.path.getmtime(full), timezone.utc)
            except OSError:
                continue
            if modified > last.timestamp:
                return True
        return False

    async def _receive(self, watch: _PathWatch, timeout: Optional[float] = None):
        """
        Next message on the path's queue, or None if timeout elapses first.

        The outstanding get survives a timeout, so a message delivered as
        the debounce expires is read on the next call instead of dropped.
        """
        if watch.getter is None:
            watch.getter = asyncio.ensure_future(watch.queue.get())
        done, _ = await asyncio.wait({watch.getter}, timeout=timeout)
        if not done:
            return None
        message = watch.getter.result()
        watch.getter = None
        return message

    async def _control(self, watch: _PathWatch):
        while True:
            if watch.state is WatchState.IDLE:
                message = await self._receive(watch)
                if message == _CHANGE:
                    watch.state = WatchState.PENDING_CHANGE

            elif watch.state is WatchState.PENDING_CHANGE:
                # Any change restarts the wait
                message = await self._receive(watch, self.debounce_seconds)
                if message is None:
                    watch.state = WatchState.BACKING_UP
                    watch.pending = False
                    watch.backups_started += 1
                    watch.backup_task = asyncio.create_task(self._run_backup(watch))

            elif watch.state is WatchState.BACKING_UP:
                message = await self._receive(watch)
                if message == _CHANGE:
                    watch.pending = True
                elif message == _DONE:
                    watch.backup_task = None
                    watch.state = WatchState.PENDING_CHANGE if watch.pending else WatchState.IDLE
                    watch.pending = False
                    watch.backups_started += 1
                    watch.backup_task = asyncio.create_task(self._run_backup(watch))

            elif watch.state is WatchState.BACKING_UP:
                message = await watch.queue.get()
                if message == _CHANGE:
                    watch.pending = True
                elif message == _DONE:
                    watch.backup_task = None
                    watch.state = WatchState.PENDING_CHANGE if watch.pending else WatchState.IDLE
                    watch.pending = False

    async def _run_backup(self, watch: _PathWatch):
        logger.info(f"Change detected, backing up {watch.path}")
        try:
            await asyncio.to_thread(self.backup_fn, watch.path, self._cancellation_check)
        except BackupCancelled:
            logger.info(f"Backup of {watch.path} abandoned for shutdown")
        except Exception as e:
            # The path goes back to Idle; other paths keep running
            logger.error(f"Backup of {watch.path} failed: {e}")
        finally:
            watch.queue.put_nowait(_DONE)

    def _cancellation_check(self):
        if self._cancel_event.is_set():
            raise BackupCancelled("Watch mode is shutting down")

    async def wait_until_idle(self, poll_interval: float = 0.01):
        """Wait until every path is Idle with nothing queued."""
        while any(
            w.state is not WatchState.IDLE or not w.queue.empty() or w.getter_ready()
            for w in self._watches.values()
        ):
            await asyncio.sleep(poll_interval)

    async def stop(self):
        """
        Stop watching and unwind.

        New changes are refused, running backups are told to abandon at
        their next stage boundary, the observer is stopped and every task
        is awaited.
        """
        if not self._started:
            return

        self._accepting = False
        self._cancel_event.set()

        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 10)
            self._observer = None

        controllers = [w.controller for w in self._watches.values() if w.controller]
        getters = [w.getter for w in self._watches.values() if w.getter]
        for task in controllers + getters:
            task.cancel()
        await self._gather(controllers + getters)

        await self._gather([w.backup_task for w in self._watches.values() if w.backup_task])

        self._watches.clear()
        self._started = False
        logger.info("Watch mode stopped")

    async def _gather(self, tasks: List[asyncio.Task]):
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Watch task ended with error: {result}")


def install_signal_handlers(stop_event: asyncio.Event):
    """Set stop_event on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_until_stopped(orchestrator: WatchOrchestrator, stop_event: Optional[asyncio.Event] = None,
                            maintenance=None, state=None, reconcile: bool = True):
    """
    Run watch mode until stop_event is set (or a termination signal arrives).

    Args:
        orchestrator: Orchestrator to run
        stop_event: Event ending the run (default: new event set by signals)
        maintenance: Optional MaintenanceScheduler started alongside
        state: Optional StateStore closed once everything has stopped
        reconcile: Passed to ``orchestrator.start``
    """
    if stop_event is None:
        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)

    await orchestrator.start(reconcile=reconcile)
    if maintenance is not None:
        maintenance.start()

    try:
        await stop_event.wait()
    finally:
        if maintenance is not None:
            maintenance.shutdown()
        await orchestrator.stop()
        if state is not None:
            state.close()
