import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class Outbox:
    """Side effects deferred until the core write has committed.

    Failures are logged and counted; they never undo the committed work.
    """

    def __init__(self):
        self._pending: list[tuple[str, Callable[[], object]]] = []
        self.failures = 0

    def add(self, label: str, action: Callable[[], object]):
        self._pending.append((label, action))

    def discard(self):
        self._pending.clear()

    def flush(self) -> int:
        pending, self._pending = self._pending, []
        failed = 0
        for label, action in pending:
            try:
                action()
            except Exception as exc:
                failed += 1
                logger.warning("Side effect %s failed: %s", label, exc)
        self.failures += failed
        return failed

    def __len__(self):
        return len(self._pending)
