"""The flag daemon runtime: wires sync sources, the evaluator and the services together."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

from .subscriptions import DataSync

CONFIGURATION_CHANGE = "configuration_change"

_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class Notification:
    """An event pushed to the clients of the evaluation service."""

    type: str = CONFIGURATION_CHANGE
    data: Mapping[str, Any] = field(default_factory=dict)


class _Sink(Protocol):
    def put(self, item: Any) -> None: ...


class _Sync(Protocol):
    def init(self, stop: threading.Event) -> None: ...

    def sync(self, stop: threading.Event, sink: _Sink) -> None: ...

    def resync(self, stop: threading.Event, sink: _Sink) -> None: ...

    def is_ready(self) -> bool: ...


class _Evaluator(Protocol):
    def set_state(self, payload: DataSync) -> tuple[Mapping[str, Any], bool]: ...


class _EvaluationService(Protocol):
    def serve(self, stop: threading.Event, config: Mapping[str, Any]) -> None: ...

    def notify(self, notification: Notification) -> None: ...

    def shutdown(self) -> None: ...


class _StartableService(Protocol):
    def start(self, stop: threading.Event) -> None: ...


class _FlagSyncService(_StartableService, Protocol):
    def emit(self, resync_required: bool, source: str) -> None: ...


class _TaskGroup:
    """Threads sharing one stop event; the first failure stops all of them."""

    def __init__(self) -> None:
        self.stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._error: BaseException | None = None

    def go(self, fn: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=self._run, args=(fn, args), daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _run(self, fn: Callable[..., None], args: tuple[Any, ...]) -> None:
        try:
            fn(*args)
        except BaseException as err:  # any failure ends the whole group
            with self._lock:
                if self._error is None:
                    self._error = err
            self.stop.set()

    def wait(self) -> None:
        """Block until every task, including ones added while waiting, has finished."""
        while True:
            with self._lock:
                pending = [t for t in self._threads if t.is_alive()]
            if not pending:
                break
            for thread in pending:
                thread.join()
        if self._error is not None:
            raise RuntimeError(f"errgroup closed with error: {self._error}") from self._error


@dataclass(eq=False)
class Runtime:
    """Runs sync sources and services until stopped or until one of them fails."""

    evaluator: _Evaluator | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    flag_sync: _FlagSyncService | None = None
    ofrep_service: _StartableService | None = None
    service: _EvaluationService | None = None
    service_config: dict[str, Any] = field(default_factory=dict)
    sync_impl: Sequence[_Sync] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def start(self, stop_event: threading.Event) -> None:
        """Run until ``stop_event`` is set; raise if any part of the runtime fails."""
        if self.service is None:
            raise ValueError("no service set")
        if not self.sync_impl:
            raise ValueError("no sync implementation set")
        if self.evaluator is None:
            raise ValueError("no evaluator set")

        group = _TaskGroup()
        threading.Thread(target=self._link_stop, args=(stop_event, group.stop), daemon=True).start()
        data_sync: queue.Queue[DataSync] = queue.Queue()

        try:
            group.go(self._watch_data, group, data_sync)
            for source in self.sync_impl:
                try:
                    source.init(group.stop)
                except Exception as err:
                    raise RuntimeError(f"sync provider init returned error: {err}") from err
            for source in self.sync_impl:
                group.go(self._run_sync, source, group.stop, data_sync)

            try:
                group.go(self._serve, group.stop)
                if self.ofrep_service is not None:
                    group.go(self._run_service, self.ofrep_service, group.stop, "error from ofrep server")
                if self.flag_sync is not None:
                    group.go(self._run_service, self.flag_sync, group.stop, "error from sync server")
                group.wait()
            finally:
                self.logger.info("Shutting down server...")
                self.service.shutdown()
                self.logger.info("Server successfully shutdown.")
        finally:
            group.stop.set()

    def is_ready(self) -> bool:
        """True when every sync source is able to watch for flag changes."""
        return all(source.is_ready() for source in self.sync_impl)

    def update_and_emit(self, payload: DataSync) -> bool:
        """Apply ``payload``, notify clients and sync peers; return whether a resync is needed."""
        with self._lock:
            assert self.evaluator is not None
            try:
                notifications, resync_required = self.evaluator.set_state(payload)
            except Exception as err:
                self.logger.error("%s", err)
                return False
            if self.service is not None:
                self.service.notify(
                    Notification(type=CONFIGURATION_CHANGE, data={"flags": notifications})
                )
            if self.flag_sync is not None:
                self.flag_sync.emit(resync_required, payload.source)
            return resync_required

    @staticmethod
    def _link_stop(outer: threading.Event, inner: threading.Event) -> None:
        while not inner.is_set():
            if outer.wait(_POLL_INTERVAL):
                inner.set()

    def _watch_data(self, group: _TaskGroup, data_sync: queue.Queue[DataSync]) -> None:
        while not group.stop.is_set():
            try:
                data = data_sync.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            # a delete during a merge asks every source for its full state again; only the
            # source that owns a flag can delete it, so resyncs cannot snowball
            if self.update_and_emit(data):
                for source in self.sync_impl:
                    group.go(self._resync, source, group.stop, data_sync)

    @staticmethod
    def _resync(source: _Sync, stop: threading.Event, sink: _Sink) -> None:
        try:
            source.resync(stop, sink)
        except Exception as err:
            raise RuntimeError(f"error resyncing sources: {err}") from err

    @staticmethod
    def _run_sync(source: _Sync, stop: threading.Event, sink: _Sink) -> None:
        try:
            source.sync(stop, sink)
        except Exception as err:
            raise RuntimeError(f"sync provider returned error: {err}") from err

    def _serve(self, stop: threading.Event) -> None:
        assert self.service is not None
        # readiness follows the sync sources
        self.service_config["readiness_probe"] = self.is_ready
        try:
            self.service.serve(stop, self.service_config)
        except Exception as err:
            raise RuntimeError(f"error returned from serving flag evaluation service: {err}") from err

    @staticmethod
    def _run_service(service: _StartableService, stop: threading.Event, message: str) -> None:
        try:
            service.start(stop)
        except Exception as err:
            raise RuntimeError(f"{message}: {err}") from err