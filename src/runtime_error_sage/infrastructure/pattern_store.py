"""Pattern store client with an explicit connection-state machine.

State machine::

    DISCONNECTED --connect()--> CONNECTING --ok--> CONNECTED
                                           --fail-> DISCONNECTED
    CONNECTED --operation fails--> RECONNECTING --ping ok--> CONNECTED
                                               --attempts exhausted--> DISCONNECTED

* Operations issued while DISCONNECTED fail fast with
  :class:`StoreConnectivityError`; nothing is queued.
* Operations issued while CONNECTING or RECONNECTING wait on the state
  condition for at most ``operation_timeout`` seconds, then fail fast.  They
  never return a cached or stale success in the meantime.
* The operation that hit the failure is retried once after a successful
  reconnect.

Layout in the backing key/value store (natural key ``(service, pattern_id)``)::

    {key_prefix}{service}:{pattern_id}                      -> pattern JSON
    {index_prefix}id:{pattern_id}                           -> service
    {index_prefix}tag:{tag}:{service}:{pattern_id}          -> "1"
    {index_prefix}category:{category}:{service}:{pattern_id} -> "1"
    {index_prefix}type:{error_type}:{service}:{pattern_id}  -> "1"
    {index_prefix}action:{action}:{service}:{pattern_id}    -> "1"
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from runtime_error_sage.domain.entities import ErrorPattern
from runtime_error_sage.domain.enums import ConnectionState
from runtime_error_sage.domain.events import PatternDeleted, PatternSaved, StoreStateChanged
from runtime_error_sage.domain.exceptions import OperationCancelledError, StoreConnectivityError
from runtime_error_sage.infrastructure.backends import PatternBackend
from runtime_error_sage.infrastructure.cancellation import CancellationToken, ensure_token
from runtime_error_sage.infrastructure.config import StoreConfig
from runtime_error_sage.infrastructure.event_bus import EventBus
from runtime_error_sage.infrastructure.pattern_cache import PatternCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INDEX_KINDS = ("tag", "category", "type", "action")


class PatternStore:
    """Durable catalog of :class:`ErrorPattern` records.

    Parameters
    ----------
    backend:
        Key/value backend (in-memory, Redis, ...).
    config:
        Layout, reconnect and retention parameters.
    cache:
        Cache owned by this store.  Built from *config* when omitted.
    event_bus:
        Receives state-change and pattern events.
    clock:
        Wall clock used for retention decisions.
    """

    def __init__(
        self,
        backend: PatternBackend,
        config: StoreConfig | None = None,
        cache: PatternCache | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._config = config or StoreConfig()
        self._config.validate()
        self._cache = cache if cache is not None else PatternCache(
            max_size=self._config.cache_max_size,
            max_age=self._config.cache_max_age,
        )
        self._bus = event_bus
        self._clock = clock
        self._cond = threading.Condition(threading.RLock())
        self._state = ConnectionState.DISCONNECTED
        self._closing = threading.Event()

    # ------------------------------------------------------------------ #
    #  Connection state machine                                            #
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ConnectionState:
        with self._cond:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def cache(self) -> PatternCache:
        return self._cache

    def connect(self, cancel_token: CancellationToken | None = None) -> None:
        """Connect to the backend, retrying with exponential backoff.

        Raises :class:`StoreConnectivityError` when every attempt fails.
        """
        token = ensure_token(cancel_token)
        with self._cond:
            if self._state == ConnectionState.CONNECTED:
                return
            if self._state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
                owner = False
            else:
                owner = True
                self._closing.clear()
                self._set_state(ConnectionState.CONNECTING)
        if not owner:
            self._await_connected("connect", token)
            return

        ok = self._attempt(token, first_delay=False)
        with self._cond:
            if self._state == ConnectionState.CONNECTING:
                self._set_state(ConnectionState.CONNECTED if ok else ConnectionState.DISCONNECTED)
            connected = self._state == ConnectionState.CONNECTED
        if not connected:
            token.raise_if_cancelled("pattern store connect")
            raise StoreConnectivityError(
                "Could not connect to pattern store backend",
                state=ConnectionState.DISCONNECTED.value,
                operation="connect",
            )

    def disconnect(self) -> None:
        """Drop the connection; pending reconnects are abandoned."""
        self._closing.set()
        with self._cond:
            if self._state != ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.DISCONNECTED)
        self._backend.close()

    def validate_connection(self) -> bool:
        """Return ``True`` when connected and the backend answers a ping."""
        if not self.is_connected:
            return False
        return self._ping()

    def _set_state(self, new: ConnectionState) -> None:
        # caller holds self._cond
        previous = self._state
        if previous == new:
            return
        self._state = new
        self._cond.notify_all()
        logger.info("PatternStore: %s -> %s", previous.value, new.value)
        if self._bus is not None:
            self._bus.publish(
                StoreStateChanged(source_id="pattern_store", previous=previous, current=new)
            )

    def _ping(self) -> bool:
        try:
            return bool(self._backend.ping())
        except OSError as exc:
            logger.debug("PatternStore: ping failed: %s", exc)
            return False

    def _sleep(self, delay: float, token: CancellationToken) -> bool:
        """Sleep up to *delay*; return ``True`` if interrupted."""
        end = time.monotonic() + delay
        while True:
            if self._closing.is_set() or token.cancelled:
                return True
            remaining = end - time.monotonic()
            if remaining <= 0:
                return False
            self._closing.wait(min(remaining, 0.05))

    def _attempt(self, token: CancellationToken, first_delay: bool) -> bool:
        """Ping up to ``max_reconnect_attempts`` times with backoff."""
        cfg = self._config
        for attempt in range(cfg.max_reconnect_attempts):
            if first_delay or attempt > 0:
                exponent = attempt if first_delay else attempt - 1
                delay = min(cfg.base_backoff * (2 ** exponent), cfg.max_backoff)
                if self._sleep(delay, token):
                    return False
            if self._ping():
                return True
            logger.warning(
                "PatternStore: connection attempt %d/%d failed",
                attempt + 1,
                cfg.max_reconnect_attempts,
            )
        return False

    def _await_connected(self, operation: str, token: CancellationToken) -> None:
        deadline = time.monotonic() + self._config.operation_timeout
        with self._cond:
            while True:
                if self._state == ConnectionState.CONNECTED:
                    return
                if self._state == ConnectionState.DISCONNECTED:
                    raise StoreConnectivityError(
                        f"Pattern store is disconnected; {operation} rejected",
                        state=self._state.value,
                        operation=operation,
                    )
                if token.cancelled:
                    raise OperationCancelledError(f"pattern store {operation} cancelled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise StoreConnectivityError(
                        f"Timed out waiting for pattern store to reconnect; {operation} rejected",
                        state=self._state.value,
                        operation=operation,
                    )
                self._cond.wait(min(remaining, 0.05))

    def _recover(self, operation: str, token: CancellationToken) -> bool:
        """Reconnect after a failed operation; ``True`` when connected again."""
        with self._cond:
            owner = self._state == ConnectionState.CONNECTED
            if owner:
                self._set_state(ConnectionState.RECONNECTING)
        if not owner:
            try:
                self._await_connected(operation, token)
                return True
            except StoreConnectivityError:
                return False

        ok = self._attempt(token, first_delay=True)
        with self._cond:
            if self._state == ConnectionState.RECONNECTING:
                self._set_state(ConnectionState.CONNECTED if ok else ConnectionState.DISCONNECTED)
            return self._state == ConnectionState.CONNECTED

    def _execute(
        self,
        operation: str,
        fn: Callable[[], T],
        cancel_token: CancellationToken | None = None,
    ) -> T:
        token = ensure_token(cancel_token)
        token.raise_if_cancelled(f"pattern store {operation}")
        self._await_connected(operation, token)
        try:
            return fn()
        except OSError as exc:
            logger.warning("PatternStore: %s failed: %s", operation, exc)
            first_error: OSError = exc
        if self._recover(operation, token):
            try:
                return fn()
            except OSError as exc:
                logger.warning("PatternStore: %s failed after reconnect: %s", operation, exc)
                first_error = exc
        token.raise_if_cancelled(f"pattern store {operation}")
        raise StoreConnectivityError(
            f"Pattern store {operation} failed: {first_error}",
            state=self.state.value,
            operation=operation,
        ) from first_error

    # ------------------------------------------------------------------ #
    #  Key layout                                                          #
    # ------------------------------------------------------------------ #

    def _record_key(self, service_name: str, pattern_id: str) -> str:
        return f"{self._config.key_prefix}{service_name}:{pattern_id}"

    def _id_key(self, pattern_id: str) -> str:
        return f"{self._config.index_prefix}id:{pattern_id}"

    def _index_prefix(self, kind: str, value: str) -> str:
        return f"{self._config.index_prefix}{kind}:{value.lower()}:"

    def _index_keys(self, pattern: ErrorPattern) -> set[str]:
        suffix = f"{pattern.service_name}:{pattern.pattern_id}"
        keys = {self._index_prefix("tag", t) + suffix for t in pattern.tags if t}
        if pattern.category:
            keys.add(self._index_prefix("category", pattern.category) + suffix)
        if pattern.error_type:
            keys.add(self._index_prefix("type", pattern.error_type) + suffix)
        keys.update(self._index_prefix("action", a) + suffix for a in pattern.known_actions)
        return keys

    @staticmethod
    def _split_natural_key(rest: str) -> tuple[str, str] | None:
        parts = rest.split(":")
        if len(parts) != 2 or not all(parts):
            return None
        return parts[0], parts[1]

    # ------------------------------------------------------------------ #
    #  Record helpers (run inside _execute)                                #
    # ------------------------------------------------------------------ #

    def _read(self, service_name: str, pattern_id: str) -> ErrorPattern | None:
        cached = self._cache.get((service_name, pattern_id))
        if cached is not None:
            return cached
        raw = self._backend.get(self._record_key(service_name, pattern_id))
        if raw is None:
            return None
        try:
            pattern = ErrorPattern.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "PatternStore: skipping corrupt record %s/%s: %s", service_name, pattern_id, exc
            )
            return None
        self._cache.put(pattern)
        return pattern

    def _read_uncached(self, service_name: str, pattern_id: str) -> ErrorPattern | None:
        raw = self._backend.get(self._record_key(service_name, pattern_id))
        if raw is None:
            return None
        try:
            return ErrorPattern.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            return None

    def _write(self, pattern: ErrorPattern) -> None:
        previous = self._read_uncached(pattern.service_name, pattern.pattern_id)
        new_index = self._index_keys(pattern)
        if previous is not None:
            for stale in self._index_keys(previous) - new_index:
                self._backend.delete(stale)
        self._backend.set(
            self._record_key(pattern.service_name, pattern.pattern_id),
            json.dumps(pattern.to_dict(), sort_keys=True),
        )
        self._backend.set(self._id_key(pattern.pattern_id), pattern.service_name)
        for key in new_index:
            self._backend.set(key, "1")
        self._cache.put(pattern)

    def _remove(self, service_name: str, pattern_id: str) -> bool:
        existing = self._read_uncached(service_name, pattern_id)
        if existing is None:
            self._cache.invalidate((service_name, pattern_id))
            return False
        for key in self._index_keys(existing):
            self._backend.delete(key)
        self._backend.delete(self._record_key(service_name, pattern_id))
        if self._backend.get(self._id_key(pattern_id)) == service_name:
            self._backend.delete(self._id_key(pattern_id))
        self._cache.invalidate((service_name, pattern_id))
        return True

    def _resolve_service(self, pattern_id: str, service_name: str | None) -> str | None:
        if service_name:
            return service_name
        return self._backend.get(self._id_key(pattern_id))

    def _load_many(self, keys: list[str], prefix: str) -> list[ErrorPattern]:
        patterns: list[ErrorPattern] = []
        for key in keys:
            natural = self._split_natural_key(key[len(prefix):])
            if natural is None:
                continue
            pattern = self._read(*natural)
            if pattern is not None:
                patterns.append(pattern)
        return patterns

    # ------------------------------------------------------------------ #
    #  Public operations                                                   #
    # ------------------------------------------------------------------ #

    def get_pattern(
        self,
        pattern_id: str,
        service_name: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ErrorPattern | None:
        """Return the pattern, or ``None`` if it does not exist."""

        def op() -> ErrorPattern | None:
            service = self._resolve_service(pattern_id, service_name)
            if not service:
                return None
            return self._read(service, pattern_id)

        return self._execute("get_pattern", op, cancel_token)

    def save_pattern(
        self,
        pattern: ErrorPattern,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """Insert or overwrite *pattern* (idempotent by natural key)."""
        self._execute("save_pattern", lambda: self._write(pattern), cancel_token)
        self._publish(PatternSaved(
            source_id="pattern_store",
            service_name=pattern.service_name,
            pattern_id=pattern.pattern_id,
        ))

    def update_pattern(
        self,
        pattern: ErrorPattern,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """Overwrite an existing pattern.  Raises ``KeyError`` if absent."""

        def op() -> None:
            key = self._record_key(pattern.service_name, pattern.pattern_id)
            if self._backend.get(key) is None:
                raise KeyError(
                    f"Pattern '{pattern.service_name}/{pattern.pattern_id}' does not exist"
                )
            self._write(pattern)

        self._execute("update_pattern", op, cancel_token)
        self._publish(PatternSaved(
            source_id="pattern_store",
            service_name=pattern.service_name,
            pattern_id=pattern.pattern_id,
        ))

    def delete_pattern(
        self,
        pattern_id: str,
        service_name: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Delete a pattern.  Returns ``True`` if it existed."""

        def op() -> tuple[bool, str]:
            service = self._resolve_service(pattern_id, service_name)
            if not service:
                return False, ""
            return self._remove(service, pattern_id), service

        removed, service = self._execute("delete_pattern", op, cancel_token)
        if removed:
            self._publish(PatternDeleted(
                source_id="pattern_store", service_name=service, pattern_id=pattern_id
            ))
        return removed

    def get_patterns_by_service(
        self,
        service_name: str,
        cancel_token: CancellationToken | None = None,
    ) -> list[ErrorPattern]:
        prefix = f"{self._config.key_prefix}{service_name}:"

        def op() -> list[ErrorPattern]:
            keys = self._backend.keys(prefix)
            return self._load_many(
                [k for k in keys if ":" not in k[len(prefix):]],
                f"{self._config.key_prefix}",
            )

        return self._execute("get_patterns_by_service", op, cancel_token)

    def _by_index(
        self,
        kind: str,
        value: str,
        cancel_token: CancellationToken | None,
    ) -> list[ErrorPattern]:
        prefix = self._index_prefix(kind, value)
        return self._execute(
            f"get_patterns_by_{kind}",
            lambda: self._load_many(self._backend.keys(prefix), prefix),
            cancel_token,
        )

    def get_patterns_by_tag(
        self, tag: str, cancel_token: CancellationToken | None = None
    ) -> list[ErrorPattern]:
        return self._by_index("tag", tag, cancel_token)

    def get_patterns_by_category(
        self, category: str, cancel_token: CancellationToken | None = None
    ) -> list[ErrorPattern]:
        return self._by_index("category", category, cancel_token)

    def get_patterns_by_error_type(
        self, error_type: str, cancel_token: CancellationToken | None = None
    ) -> list[ErrorPattern]:
        return self._by_index("type", error_type, cancel_token)

    def get_patterns_by_action(
        self, action_name: str, cancel_token: CancellationToken | None = None
    ) -> list[ErrorPattern]:
        """Patterns with recorded outcomes for *action_name*."""
        return self._by_index("action", action_name, cancel_token)

    def get_all_patterns(
        self, cancel_token: CancellationToken | None = None
    ) -> list[ErrorPattern]:
        prefix = self._config.key_prefix
        return self._execute(
            "get_all_patterns",
            lambda: self._load_many(self._backend.keys(prefix), prefix),
            cancel_token,
        )

    def get_pattern_count(
        self,
        service_name: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> int:
        prefix = self._config.key_prefix + (f"{service_name}:" if service_name else "")

        def op() -> int:
            base = len(self._config.key_prefix)
            return sum(
                1 for k in self._backend.keys(prefix)
                if self._split_natural_key(k[base:]) is not None
            )

        return self._execute("get_pattern_count", op, cancel_token)

    def purge_expired(
        self,
        now: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> int:
        """Delete patterns older than the retention period; return how many."""
        now = now if now is not None else self._clock()
        retention = self._config.retention_seconds
        expired = [
            p for p in self.get_all_patterns(cancel_token)
            if p.is_expired(retention, now)
        ]
        removed = 0
        for pattern in expired:
            ok = self._execute(
                "purge_expired",
                lambda p=pattern: self._remove(p.service_name, p.pattern_id),
                cancel_token,
            )
            if ok:
                removed += 1
                self._publish(PatternDeleted(
                    source_id="pattern_store",
                    service_name=pattern.service_name,
                    pattern_id=pattern.pattern_id,
                    expired=True,
                ))
        self._cache.purge_expired()
        if removed:
            logger.info("PatternStore: purged %d expired pattern(s)", removed)
        return removed

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    def __repr__(self) -> str:
        return f"PatternStore(state={self.state.value}, backend={type(self._backend).__name__})"
