"""Scoped cleanup registry with reverse-order teardown.

Loop devices, partition mappings, mounts and containers are kernel-global and
in short supply. If a build fails after kpartx-mapping a loop device, the
mapping has to go before the loop device is detached, or the loop device can
stay busy until the next reboot. Every component therefore registers each
resource here immediately after allocating it, and releases it through the
registry rather than directly.

Usage:
    registry = CleanupRegistry(handlers.teardown)

    with registry.scope("squashfs", parent=run_scope) as scope:
        loop = attach(...)
        registry.register(scope, ResourceKind.LOOP_DEVICE, loop)
        ...
    # loop device detached here on success and on failure

The registry is one object per run, owned by the build context and handed
down by reference. Obligations are removed before their teardown runs, so a
flush can never release the same resource twice.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from typing import Callable, Generator, Iterable, Optional

from docker2usb.domain.models import (
    CleanupObligation,
    ResourceKind,
    ScopeToken,
    TeardownFailure,
)
from docker2usb.logging import EventLogger, LoggerFactory
from docker2usb.storage.exceptions import UnknownResourceKindError


log = LoggerFactory.for_cleanup()

Teardown = Callable[[CleanupObligation], None]


class CleanupRegistry:
    """Ordered record of resources that still have to be released."""

    def __init__(self, teardown: Teardown):
        self._teardown = teardown
        self._obligations: list[CleanupObligation] = []
        self._sequence = itertools.count()
        self._scope_ids = itertools.count(1)
        # Re-entrant: a signal handler may run while a flush is in progress.
        self._lock = threading.RLock()
        self.teardown_failures: list[TeardownFailure] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._obligations)

    def open_scope(self, name: str, parent: Optional[ScopeToken] = None) -> ScopeToken:
        """Create a new scope token. Its obligations are flushed by the caller."""
        with self._lock:
            return ScopeToken(id=next(self._scope_ids), name=name, parent=parent)

    @contextmanager
    def scope(
        self, name: str, parent: Optional[ScopeToken] = None
    ) -> Generator[ScopeToken, None, None]:
        """Yield a fresh scope token and flush it on every exit path."""
        token = self.open_scope(name, parent)
        try:
            yield token
        finally:
            self.flush_scope(token)

    def register(
        self, scope: ScopeToken, kind: ResourceKind, resource: str
    ) -> CleanupObligation:
        """Record a freshly allocated resource under ``scope``."""
        with self._lock:
            obligation = CleanupObligation(
                scope=scope,
                kind=kind,
                sequence=next(self._sequence),
                resource=str(resource),
            )
            self._obligations.append(obligation)
        EventLogger.log_obligation_registered(log, obligation)
        return obligation

    def pending(self, scope: Optional[ScopeToken] = None) -> list[CleanupObligation]:
        """Outstanding obligations in registration order, optionally for one scope."""
        with self._lock:
            if scope is None:
                return list(self._obligations)
            return [item for item in self._obligations if item.scope == scope]

    def flush_scope(self, scope: ScopeToken) -> list[TeardownFailure]:
        """Release every obligation owned by ``scope``, newest first."""
        with self._lock:
            selected = [item for item in self._obligations if item.scope == scope]
        return self._drain(selected)

    def flush_all(self) -> list[TeardownFailure]:
        """Release every outstanding obligation, newest first.

        Safe to call repeatedly; an empty registry makes this a no-op.
        """
        with self._lock:
            selected = list(self._obligations)
        if selected:
            log.info(f"Releasing {len(selected)} outstanding resource(s)")
        return self._drain(selected)

    def release(self, obligation: CleanupObligation) -> list[TeardownFailure]:
        """Release one specific obligation ahead of the rest of its scope."""
        return self._drain([obligation])

    def withdraw(
        self, scope: ScopeToken, kind: ResourceKind, sequence: int
    ) -> Optional[CleanupObligation]:
        """Remove an obligation without running its teardown.

        Used when ownership of the resource passes to someone else.
        Returns the withdrawn obligation, or None if it was not pending.
        """
        with self._lock:
            for index, item in enumerate(self._obligations):
                if item.scope == scope and item.kind == kind and item.sequence == sequence:
                    del self._obligations[index]
                    log.debug(f"Withdrew {item.describe()} from scope {scope.path}")
                    return item
        return None

    def handoff(
        self, obligation: CleanupObligation, target: ScopeToken
    ) -> CleanupObligation:
        """Move an obligation to a longer-lived scope."""
        with self._lock:
            withdrawn = self.withdraw(obligation.scope, obligation.kind, obligation.sequence)
            if withdrawn is None:
                raise KeyError(f"Obligation not pending: {obligation.describe()}")
            return self.register(target, withdrawn.kind, withdrawn.resource)

    def _consume(self, obligation: CleanupObligation) -> bool:
        with self._lock:
            try:
                self._obligations.remove(obligation)
            except ValueError:
                return False
            return True

    def _drain(self, selected: Iterable[CleanupObligation]) -> list[TeardownFailure]:
        failures: list[TeardownFailure] = []
        for obligation in sorted(selected, key=lambda item: item.sequence, reverse=True):
            # Already consumed by an earlier or nested flush.
            if not self._consume(obligation):
                continue
            try:
                self._teardown(obligation)
            except UnknownResourceKindError as error:
                log.error(str(error))
                failures.append(TeardownFailure(obligation, str(error)))
            except Exception as error:
                EventLogger.log_teardown_failed(log, obligation, str(error))
                failures.append(TeardownFailure(obligation, str(error)))
        with self._lock:
            self.teardown_failures.extend(failures)
        return failures
