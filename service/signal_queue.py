import logging
from typing import Awaitable, Callable, List

from models.pairing import QueuedSignal

logger = logging.getLogger("signal_queue")


class SignalQueue:
    """
    FIFO buffer for negotiation messages that arrive before the engine can
    apply them.

    Draining swaps the buffer out in one step, so every queued signal is handed
    to the handler exactly once and in arrival order. Signals enqueued while a
    drain is running land in the fresh buffer and are handled after the current
    batch.
    """

    def __init__(self, name: str = "signals"):
        self.name = name
        self._buffer: List[QueuedSignal] = []
        self._draining = False
        self._epoch = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def draining(self) -> bool:
        return self._draining

    def pending(self) -> List[QueuedSignal]:
        return list(self._buffer)

    def enqueue(self, signal: QueuedSignal) -> None:
        self._buffer.append(signal)
        logger.debug(f"[{self.name}] queued {signal.type} ({len(self._buffer)} pending)")

    async def drain_when_ready(
        self,
        is_ready: Callable[[], bool],
        handler: Callable[[QueuedSignal], Awaitable[None]],
    ) -> int:
        """Feeds queued signals to ``handler`` once ``is_ready()`` holds. Returns the count handled."""
        if self._draining or not is_ready():
            return 0

        self._draining = True
        epoch = self._epoch
        handled = 0
        try:
            while self._buffer and is_ready():
                batch, self._buffer = self._buffer, []
                logger.debug(f"[{self.name}] draining {len(batch)} signal(s)")
                for index, signal in enumerate(batch):
                    if epoch != self._epoch:
                        # reset() during the drain drops the rest of the batch
                        return handled
                    if not is_ready():
                        self._buffer = batch[index:] + self._buffer
                        return handled
                    try:
                        await handler(signal)
                    except BaseException:
                        if epoch == self._epoch:
                            self._buffer = batch[index + 1:] + self._buffer
                        raise
                    handled += 1
        finally:
            self._draining = False
        return handled

    def reset(self) -> int:
        dropped = len(self._buffer)
        self._buffer = []
        self._epoch += 1
        if dropped:
            logger.info(f"[{self.name}] dropped {dropped} queued signal(s) on reset")
        return dropped
