"""Shared flag subscriptions: one sync source per target, fanned out to every subscriber."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Hashable, Protocol

CLEANUP_INTERVAL = 5.0
FETCH_TIMEOUT = 5.0


class SyncType(IntEnum):
    """Kind of change carried by a sync payload."""

    ALL = 0
    ADD = 1
    UPDATE = 2
    DELETE = 3


@dataclass(frozen=True)
class DataSync:
    """A flag configuration payload emitted by a sync source."""

    flag_data: str = ""
    source: str = ""
    type: SyncType = SyncType.ALL


class _Sink(Protocol):
    def put(self, item: Any) -> None: ...


class _SyncSource(Protocol):
    def init(self, stop: threading.Event) -> None: ...

    def sync(self, stop: threading.Event, sink: _Sink) -> None: ...

    def resync(self, stop: threading.Event, sink: _Sink) -> None: ...


class _SyncBuilder(Protocol):
    def sync_from_uri(self, uri: str, logger: logging.Logger) -> _SyncSource: ...


@dataclass(frozen=True)
class _Subscriber:
    err_queue: Any
    data_sync: Any


class _Multiplexer:
    """Distributes the updates of one target to all of its subscribers."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._subs: dict[Hashable, _Subscriber] = {}
        self._lock = threading.Lock()
        self.stop = threading.Event()
        self.sync_ref: _SyncSource | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)

    def add(self, key: Hashable, sub: _Subscriber) -> None:
        with self._lock:
            self._subs[key] = sub

    def remove(self, key: Hashable) -> None:
        with self._lock:
            self._subs.pop(key, None)

    def cancel(self) -> None:
        self.stop.set()

    def _snapshot(self) -> list[tuple[Hashable, _Subscriber]]:
        with self._lock:
            return list(self._subs.items())

    def put(self, data: DataSync) -> None:
        """Sink interface for the sync source: broadcast ``data``."""
        self.broadcast_data(data)

    def broadcast_data(self, data: DataSync) -> None:
        for key, sub in self._snapshot():
            try:
                sub.data_sync.put_nowait(data)
            except queue.Full:
                self._logger.error("unable to write data to channel for key %r", key)

    def broadcast_error(self, err: BaseException) -> None:
        for key, sub in self._snapshot():
            try:
                sub.err_queue.put_nowait(err)
            except queue.Full:
                self._logger.error("unable to write error to channel for key %r", key)


class Coordinator:
    """Aggregates subscribers of the same target and keeps them up to date."""

    def __init__(
        self,
        stop_event: threading.Event,
        logger: logging.Logger,
        sync_builder: _SyncBuilder,
    ) -> None:
        self._stop = stop_event
        self._logger = logger
        self._sync_builder = sync_builder
        self._multiplexers: dict[str, _Multiplexer] = {}
        self._lock = threading.Lock()
        self.cleanup_interval = CLEANUP_INTERVAL
        self.fetch_timeout = FETCH_TIMEOUT
        self._cleanup_thread = threading.Thread(target=self._cleanup, daemon=True)
        self._cleanup_thread.start()

    def __enter__(self) -> Coordinator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __contains__(self, target: object) -> bool:
        with self._lock:
            return target in self._multiplexers

    def close(self) -> None:
        """Stop the coordinator and every sync it is running."""
        self._stop.set()
        self._cleanup_thread.join(timeout=1.0)

    def fetch_all_flags(self, key: Hashable, target: str) -> DataSync:
        """Return the full flag configuration of ``target``.

        An existing sync is asked to resync; otherwise a short-lived subscription is set up.
        """
        self._logger.debug("fetching all flags for target %s", target)
        results: queue.Queue[Any] = queue.Queue()
        done = threading.Event()
        with self._lock:
            mux = self._multiplexers.get(target)
        try:
            if mux is None:
                self._logger.debug(
                    "sync handler does not exist for target %s, registering a new subscription", target
                )
                self.register_subscription(done, target, key, results, results)
            else:
                source = mux.sync_ref
                if source is None:
                    raise RuntimeError("sync ref not set")
                self._logger.debug("sync handler exists for target %s, triggering a resync", target)
                threading.Thread(
                    target=self._resync_into, args=(source, done, results, results), daemon=True
                ).start()
            try:
                item = results.get(timeout=self.fetch_timeout)
            except queue.Empty:
                raise TimeoutError(
                    f"fetching all flags timed out after {self.fetch_timeout:g} seconds"
                ) from None
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            done.set()

    def register_subscription(
        self,
        cancel: threading.Event,
        target: str,
        key: Hashable,
        data_sync: Any,
        err_queue: Any,
    ) -> None:
        """Subscribe ``key`` to ``target`` until ``cancel`` is set.

        Payloads go to ``data_sync`` and errors to ``err_queue``; a full configuration
        arrives once the sync is running.
        """
        sub = _Subscriber(err_queue=err_queue, data_sync=data_sync)
        with self._lock:
            mux = self._multiplexers.get(target)
            if mux is None:
                self._logger.debug(
                    "sync handler does not exist for target %s, registering multiplexer with sub %r",
                    target,
                    key,
                )
                mux = _Multiplexer(self._logger)
                mux.add(key, sub)
                if self._stop.is_set():
                    mux.cancel()
                self._multiplexers[target] = mux
                threading.Thread(target=self._watch_resource, args=(target,), daemon=True).start()
            else:
                self._logger.debug("registering sync subscription %r", key)
                mux.add(key, sub)
                if mux.sync_ref is not None:
                    threading.Thread(
                        target=self._resync_subscriber,
                        args=(mux, target, cancel, data_sync, err_queue),
                        daemon=True,
                    ).start()
        threading.Thread(
            target=self._unsubscribe_when_cancelled, args=(cancel, target, key), daemon=True
        ).start()

    def active_subscriptions(self) -> int:
        """Number of subscriptions across all targets."""
        with self._lock:
            return sum(len(mux) for mux in self._multiplexers.values())

    def _resync_into(self, source: _SyncSource, stop: threading.Event, sink: Any, err_queue: Any) -> None:
        try:
            source.resync(stop, sink)
        except Exception as err:
            err_queue.put(err)

    def _resync_subscriber(
        self,
        mux: _Multiplexer,
        target: str,
        cancel: threading.Event,
        data_sync: Any,
        err_queue: Any,
    ) -> None:
        with self._lock:
            active = self._multiplexers.get(target) is mux
        if not active or mux.sync_ref is None:
            return
        self._logger.debug("sync handler exists for target %s, triggering a resync", target)
        self._resync_into(mux.sync_ref, cancel, data_sync, err_queue)

    def _unsubscribe_when_cancelled(self, cancel: threading.Event, target: str, key: Hashable) -> None:
        cancel.wait()
        with self._lock:
            mux = self._multiplexers.get(target)
            if mux is not None:
                self._logger.debug("removing sync subscription due to context cancellation %r", key)
                mux.remove(key)

    def _watch_resource(self, target: str) -> None:
        self._logger.debug("watching resource %s", target)
        with self._lock:
            mux = self._multiplexers.get(target)
        if mux is None:
            self._logger.error("no sync handler exists for target %s", target)
            return
        try:
            try:
                source = self._sync_builder.sync_from_uri(target, self._logger)
            except Exception as err:
                self._logger.error("unable to build sync from URI for target %s: %s", target, err)
                mux.broadcast_error(err)
                return
            try:
                source.init(mux.stop)
            except Exception as err:
                self._logger.error("unable to initiate sync for target %s: %s", target, err)
                mux.broadcast_error(err)
                return
            # later subscribers of this target are served by resyncing this source
            mux.sync_ref = source
            try:
                source.sync(mux.stop, mux)
            except Exception as err:
                self._logger.error("error from sync for target %s: %s", target, err)
                mux.broadcast_error(err)
        finally:
            mux.cancel()
            with self._lock:
                if self._multiplexers.get(target) is mux:
                    del self._multiplexers[target]

    def _sweep(self) -> None:
        """Shut down every multiplexer that has no subscribers left."""
        with self._lock:
            for target, mux in self._multiplexers.items():
                count = len(mux)
                self._logger.debug("multiplexer for target %s has %d subscriptions", target, count)
                if count == 0:
                    self._logger.debug("shutting down multiplexer %s", target)
                    mux.cancel()

    def _cleanup(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            self._sweep()
        with self._lock:
            muxes = list(self._multiplexers.values())
        for mux in muxes:
            mux.cancel()