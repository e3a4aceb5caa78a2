"""Live registry events: a polling thread feeding a bounded queue.

The poller asks for the head block every ``poll_interval`` seconds, scans the
new blocks with the same chunked scanner used for history, decodes the logs
and puts the events on a ``queue.Queue``. A full queue blocks the poller until
the consumer catches up or the subscription is cancelled.
"""

from __future__ import annotations

import queue
import threading
from typing import Any, Iterator

from error_map import RegistryError, ValidationError
from event_decoder import RegistryEvent, build_signature_table, decode_logs
from log_setup import setup_logger
from logs_engine import DEFAULT_WINDOW_SIZE, scan_logs
from quantity import parse_block_bound
from registry_config import ContractDescriptor

logger = setup_logger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_POLL_INTERVAL = 2.0


class Subscription:
    def __init__(
        self,
        provider: Any,
        descriptor: ContractDescriptor,
        kind: str,
        *,
        indexed_filters: dict[str, Any] | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        from_block: Any = "latest",
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> None:
        if queue_size <= 0:
            raise ValidationError("queue_size must be positive")
        if poll_interval <= 0:
            raise ValidationError("poll_interval must be positive")
        self.provider = provider
        self.descriptor = descriptor
        self.kind = kind
        self.declaration = descriptor.event(kind)
        self.indexed_filters = dict(indexed_filters or {})
        self.poll_interval = poll_interval
        self.window_size = window_size
        try:
            self.start_bound = parse_block_bound(from_block, field="from_block")
        except ValueError as err:
            raise ValidationError(str(err)) from err
        self.events: queue.Queue[RegistryEvent] = queue.Queue(maxsize=queue_size)
        self.next_block: int | None = None
        self.delivered = 0
        self.errors = 0
        self.last_error: RegistryError | None = None
        self._signature_table = build_signature_table(descriptor)
        self._seen: set[tuple[int, int, str]] = set()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"tagtrail-{kind}", daemon=True)

    def start(self) -> Subscription:
        self._thread.start()
        return self

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def cancel(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout if timeout is not None else self.poll_interval + 1.0)

    def get(self, timeout: float | None = None) -> RegistryEvent:
        """Next event; raises ``queue.Empty`` when none arrives within ``timeout``."""
        return self.events.get(timeout=timeout)

    def __iter__(self) -> Iterator[RegistryEvent]:
        while not self._stop.is_set() or not self.events.empty():
            try:
                yield self.events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cancel()

    def _initial_block(self, head: int) -> int:
        if isinstance(self.start_bound, int):
            return self.start_bound
        if self.start_bound == "earliest":
            return 0
        return head + 1

    def _put(self, event: RegistryEvent) -> bool:
        while not self._stop.is_set():
            try:
                self.events.put(event, timeout=self.poll_interval)
                return True
            except queue.Full:
                logger.debug("subscription queue full; waiting for consumer")
        return False

    def poll_once(self) -> int:
        """Scan blocks that appeared since the last poll; returns events queued."""
        head = self.provider.get_block_number()
        if self.next_block is None:
            self.next_block = self._initial_block(head)
        if head < self.next_block:
            return 0

        scan = scan_logs(
            self.provider,
            address=self.descriptor.address,
            event_declaration=self.declaration,
            indexed_filters=self.indexed_filters,
            from_block=self.next_block,
            to_block=head,
            window_size=self.window_size,
        )
        events, _ = decode_logs(scan.logs, self._signature_table)
        queued = 0
        for event in sorted(events, key=lambda e: e.position):
            key = (event.block_number, event.log_index, event.transaction_hash)
            if key in self._seen:
                continue
            if not self._put(event):
                return queued
            self._seen.add(key)
            queued += 1
            self.delivered += 1

        # A failed window is rescanned on the next poll; delivered keys stop duplicates.
        if scan.failed_windows:
            self.next_block = min(w.from_block for w in scan.failed_windows if w.from_block is not None)
        else:
            self.next_block = head + 1
        self._seen = {key for key in self._seen if key[0] >= self.next_block}
        return queued

    def _run(self) -> None:
        logger.info("subscribed to %s on %s", self.kind, self.descriptor.address)
        while not self._stop.is_set():
            try:
                self.poll_once()
            except RegistryError as err:
                self.errors += 1
                self.last_error = err
                logger.warning("%s poll failed: %s", self.kind, err.message)
            self._stop.wait(self.poll_interval)
        logger.info("subscription to %s stopped", self.kind)


def subscribe(
    endpoint: Any,
    descriptor: ContractDescriptor,
    kind: str,
    *,
    indexed_filters: dict[str, Any] | None = None,
    queue_size: int = DEFAULT_QUEUE_SIZE,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    from_block: Any = "latest",
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> Subscription:
    """Start polling for ``kind`` events and return the running subscription."""
    return Subscription(
        endpoint,
        descriptor,
        kind,
        indexed_filters=indexed_filters,
        queue_size=queue_size,
        poll_interval=poll_interval,
        from_block=from_block,
        window_size=window_size,
    ).start()
