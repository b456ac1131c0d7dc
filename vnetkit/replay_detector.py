"""Sliding-window detectors for replayed sequence numbers."""

from abc import ABC, abstractmethod


class _BitWindow:
    """A fixed-width bit set; bits outside the width are always clear."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._limit = (1 << size) - 1 if size > 0 else 0
        self._bits = 0

    def bit(self, index: int) -> bool:
        if not 0 <= index < self._size:
            return False
        return bool((self._bits >> index) & 1)

    def set_bit(self, index: int) -> None:
        if 0 <= index < self._size:
            self._bits |= 1 << index

    def lsh(self, count: int) -> None:
        if count >= self._size:
            self._bits = 0
        else:
            self._bits = (self._bits << count) & self._limit


class ReplayDetector(ABC):
    """Interface of a sequence replay detector."""

    @abstractmethod
    def check(self, seq: int) -> bool:
        """Return True if ``seq`` has not been replayed.

        Call :meth:`accept` afterwards to mark the packet as received.
        """

    @abstractmethod
    def accept(self) -> None:
        """Mark the sequence number passed to the last check as received."""


class SlidingWindowDetector(ReplayDetector):
    """Replay detector for monotonically increasing, non-wrapping counters.

    Suitable for DTLS replay protection.
    """

    def __init__(self, window_size: int, max_seq: int) -> None:
        self._accepted = False
        self._seq = 0
        self._latest_seq = 0
        self._max_seq = max_seq
        self._window_size = window_size
        self._mask = _BitWindow(window_size)

    def check(self, seq: int) -> bool:
        self._accepted = False
        if seq > self._max_seq:
            return False
        if seq <= self._latest_seq:
            if self._latest_seq >= self._window_size + seq:
                return False
            if self._mask.bit(self._latest_seq - seq):
                return False
        self._accepted = True
        self._seq = seq
        return True

    def accept(self) -> None:
        if not self._accepted:
            return
        if self._seq > self._latest_seq:
            self._mask.lsh(self._seq - self._latest_seq)
            self._latest_seq = self._seq
        self._mask.set_bit((self._latest_seq - self._seq) % self._max_seq)


class WrappedSlidingWindowDetector(ReplayDetector):
    """Replay detector allowing the sequence number to wrap around.

    Suitable for short counters such as those of SRTP and SRTCP.
    """

    def __init__(self, window_size: int, max_seq: int) -> None:
        self._accepted = False
        self._seq = 0
        self._latest_seq = 0
        self._max_seq = max_seq
        self._window_size = window_size
        self._mask = _BitWindow(window_size)
        self._init = False

    def _wrapped_diff(self, seq: int) -> int:
        diff = self._latest_seq - seq
        half = self._max_seq // 2
        if diff > half:
            diff -= self._max_seq + 1
        elif diff <= -half:
            diff += self._max_seq + 1
        return diff

    def check(self, seq: int) -> bool:
        self._accepted = False
        if seq > self._max_seq:
            return False
        if not self._init:
            self._latest_seq = seq - 1 if seq != 0 else self._max_seq
            self._init = True

        diff = self._wrapped_diff(seq)
        if diff >= self._window_size:
            return False
        if diff >= 0 and self._mask.bit(diff):
            return False

        self._accepted = True
        self._seq = seq
        return True

    def accept(self) -> None:
        if not self._accepted:
            return
        diff = self._wrapped_diff(self._seq)
        if diff >= self._window_size:
            raise RuntimeError("accepted sequence number fell outside the window")
        if diff < 0:
            self._mask.lsh(-diff)
            self._latest_seq = self._seq
        self._mask.set_bit(self._latest_seq - self._seq)


class NoOpReplayDetector(ReplayDetector):
    """Detector that treats every sequence number as fresh."""

    def check(self, seq: int) -> bool:
        return True

    def accept(self) -> None:
        return None