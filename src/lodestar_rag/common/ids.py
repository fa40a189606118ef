"""lodestar_rag.common.ids

Chunk identifier synthesis.

Chunk ids are 64-bit integers shared by the chunk store and the vector store,
so they must be unique across processes without coordination. They are built
snowflake-style from a millisecond timestamp, a datacenter id, a worker id and
a per-millisecond sequence.

Classes
-------
SnowflakeIdGenerator
    Thread-safe 64-bit id generator.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# 2024-01-01T00:00:00+08:00 in milliseconds.
EPOCH_MS = 1704038400000

WORKER_ID_BITS = 5
DATACENTER_ID_BITS = 5
SEQUENCE_BITS = 12

MAX_WORKER_ID = (1 << WORKER_ID_BITS) - 1
MAX_DATACENTER_ID = (1 << DATACENTER_ID_BITS) - 1
SEQUENCE_MASK = (1 << SEQUENCE_BITS) - 1

WORKER_ID_SHIFT = SEQUENCE_BITS
DATACENTER_ID_SHIFT = SEQUENCE_BITS + WORKER_ID_BITS
TIMESTAMP_SHIFT = SEQUENCE_BITS + WORKER_ID_BITS + DATACENTER_ID_BITS

MAX_CLOCK_REGRESSION_MS = 5


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class SnowflakeIdGenerator:
    """Generate unique, roughly time-ordered 64-bit identifiers.

    Parameters
    ----------
    worker_id : int, optional
        Worker id in ``[0, 31]``. Defaults to ``1``.
    datacenter_id : int, optional
        Datacenter id in ``[0, 31]``. Defaults to ``1``.
    clock : Callable[[], int], optional
        Millisecond clock. Defaults to the wall clock; override in tests.

    Raises
    ------
    ValueError
        If ``worker_id`` or ``datacenter_id`` is out of range.
    """

    def __init__(
        self,
        worker_id: int = 1,
        datacenter_id: int = 1,
        clock: Optional[Callable[[], int]] = None,
    ):
        if not 0 <= worker_id <= MAX_WORKER_ID:
            raise ValueError(f"worker_id must be between 0 and {MAX_WORKER_ID}, got {worker_id}")
        if not 0 <= datacenter_id <= MAX_DATACENTER_ID:
            raise ValueError(
                f"datacenter_id must be between 0 and {MAX_DATACENTER_ID}, got {datacenter_id}"
            )

        self.worker_id = worker_id
        self.datacenter_id = datacenter_id
        self._clock = clock or _now_ms
        self._lock = threading.Lock()
        self._sequence = 0
        self._last_timestamp = -1

        logger.info(
            "Snowflake id generator initialised (worker_id=%d, datacenter_id=%d)",
            worker_id,
            datacenter_id,
        )

    def next_id(self) -> int:
        """Return the next identifier.

        Raises
        ------
        RuntimeError
            If the clock moved backwards by more than five milliseconds, or is
            still behind after waiting out a smaller regression.
        """
        with self._lock:
            timestamp = self._clock()

            if timestamp < self._last_timestamp:
                offset = self._last_timestamp - timestamp
                if offset > MAX_CLOCK_REGRESSION_MS:
                    raise RuntimeError(
                        f"Clock moved backwards by {offset} ms; refusing to generate id"
                    )
                time.sleep((offset << 1) / 1000.0)
                timestamp = self._clock()
                if timestamp < self._last_timestamp:
                    raise RuntimeError("Clock moved backwards; refusing to generate id")

            if timestamp == self._last_timestamp:
                self._sequence = (self._sequence + 1) & SEQUENCE_MASK
                if self._sequence == 0:
                    timestamp = self._wait_next_millis(self._last_timestamp)
            else:
                self._sequence = 0

            self._last_timestamp = timestamp

            return (
                ((timestamp - EPOCH_MS) << TIMESTAMP_SHIFT)
                | (self.datacenter_id << DATACENTER_ID_SHIFT)
                | (self.worker_id << WORKER_ID_SHIFT)
                | self._sequence
            )

    __call__ = next_id

    def _wait_next_millis(self, last_timestamp: int) -> int:
        timestamp = self._clock()
        while timestamp <= last_timestamp:
            timestamp = self._clock()
        return timestamp


__all__ = ["SnowflakeIdGenerator", "EPOCH_MS"]
