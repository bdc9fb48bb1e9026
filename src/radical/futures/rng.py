"""Parallel-safe random number streams.

Work items that request reproducible randomness (``seed=True``) each get their
own L'Ecuyer-CMRG (MRG32k3a) stream. Streams are derived from a process-wide
root seed by jumping 2^127 steps per work item, so they never overlap and the
n-th future created always gets the same stream, regardless of which backend
or how many workers end up evaluating it.
"""

from __future__ import annotations

import logging
import os
import random
import sys
import threading
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import typeguard

from .config import get_settings

logger = logging.getLogger(__name__)

M1 = 4294967087
M2 = 4294944443
_NORM = 1.0 / (M1 + 1)

A1P127 = ((2427906178, 3580155704, 949770784),
          (226153695, 1230515664, 3580155704),
          (1988835001, 986791581, 1230515664))

A2P127 = ((1464411153, 277697599, 1610723613),
          (32183930, 1464411153, 1022607788),
          (2824425944, 32183930, 2093834863))

A1P76 = ((82758667, 1871391091, 4127413238),
         (3672831523, 69195019, 1871391091),
         (3672091415, 3528743235, 69195019))

A2P76 = ((1511326704, 3759209742, 1610795712),
         (4292754251, 1511326704, 3889917532),
         (3859662829, 4292754251, 3708466080))


def _mat_vec_mod(matrix, vector, m) -> tuple[int, int, int]:
    return tuple(sum(a * v for a, v in zip(row, vector)) % m for row in matrix)


def _validate_seed(seed: Sequence[int]) -> tuple[int, ...]:
    seed = tuple(int(s) for s in seed)
    if len(seed) != 6:
        raise ValueError(f"L'Ecuyer-CMRG seed must have 6 integers, got {len(seed)}")
    if any(s < 0 for s in seed):
        raise ValueError("L'Ecuyer-CMRG seed values must be non-negative")
    if any(s >= M1 for s in seed[:3]) or any(s >= M2 for s in seed[3:]):
        raise ValueError("L'Ecuyer-CMRG seed values out of range")
    if not any(seed[:3]) or not any(seed[3:]):
        raise ValueError("L'Ecuyer-CMRG seed components must not be all zero")
    return seed


@dataclass(frozen=True)
class RngStream:
    """An L'Ecuyer-CMRG seed vector and its position in the stream sequence.

    Attributes:
        seed: The six integer generator state.
        index: How many streams the issuing manager handed out before this one.
            ``None`` for streams given explicitly by the user.
    """

    seed: tuple[int, int, int, int, int, int]
    index: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "seed", _validate_seed(self.seed))

    def as_int(self) -> int:
        """Pack the seed vector into one integer, e.g. for ``random.seed``."""
        value = 0
        for s in self.seed:
            value = (value << 32) | s
        return value

    def generator(self) -> MRG32k3a:
        return MRG32k3a(self)


def seed_to_stream(seed: int) -> RngStream:
    """Turn an integer seed into a valid L'Ecuyer-CMRG seed vector.

    The integer is scrambled with a 69069 linear congruential generator and
    each component is re-drawn until it lies below its modulus.
    """
    s = int(seed) & 0xFFFFFFFF
    for _ in range(50):
        s = (69069 * s + 1) & 0xFFFFFFFF

    vector = []
    for j in range(6):
        s = (69069 * s + 1) & 0xFFFFFFFF
        m = M1 if j < 3 else M2
        while s >= m or s == 0:
            s = (69069 * s + 1) & 0xFFFFFFFF
        vector.append(s)

    return RngStream(tuple(vector))


def next_rng_stream(stream: RngStream, index: Optional[int] = None) -> RngStream:
    """Return the stream 2^127 steps ahead of ``stream``."""
    s = stream.seed
    seed = _mat_vec_mod(A1P127, s[:3], M1) + _mat_vec_mod(A2P127, s[3:], M2)
    return RngStream(seed, index)


def next_rng_substream(stream: RngStream) -> RngStream:
    """Return the substream 2^76 steps ahead of ``stream``."""
    s = stream.seed
    seed = _mat_vec_mod(A1P76, s[:3], M1) + _mat_vec_mod(A2P76, s[3:], M2)
    return RngStream(seed, stream.index)


class MRG32k3a(random.Random):
    """L'Ecuyer's MRG32k3a combined multiple recursive generator.

    A drop-in :class:`random.Random`: all derived methods (``randint``,
    ``gauss``, ``shuffle``, ...) work on top of :meth:`random`.
    """

    def __init__(self, seed: Any = None):
        self._state = seed_to_stream(12345).seed
        super().__init__(seed)

    def seed(self, a: Any = None, version: int = 2) -> None:
        if a is None:
            a = int.from_bytes(os.urandom(4), "little")
        if isinstance(a, RngStream):
            self._state = a.seed
        elif isinstance(a, (tuple, list)):
            self._state = _validate_seed(a)
        else:
            self._state = seed_to_stream(hash(a) if not isinstance(a, int) else a).seed
        self.gauss_next = None

    def random(self) -> float:
        s10, s11, s12, s20, s21, s22 = self._state

        p1 = (1403580 * s11 - 810728 * s10) % M1
        p2 = (527612 * s22 - 1370589 * s20) % M2
        self._state = (s11, s12, p1, s21, s22, p2)

        if p1 > p2:
            return (p1 - p2) * _NORM
        return (p1 - p2 + M1) * _NORM

    def getrandbits(self, k: int) -> int:
        if k < 0:
            raise ValueError("number of bits must be non-negative")
        value = 0
        bits = 0
        while bits < k:
            value = (value << 32) | int(self.random() * 4294967296.0)
            bits += 32
        return value >> (bits - k)

    def getstate(self):
        return (self._state, self.gauss_next)

    def setstate(self, state):
        self._state, self.gauss_next = state


class RngStreamManager:
    """Issues one independent stream per work item from a root seed.

    The manager is deterministic: two managers with the same root seed hand
    out byte-identical streams in the same order. Streams are never reused.
    """

    @typeguard.typechecked
    def __init__(self, root_seed: Optional[int] = None):
        if root_seed is None:
            root_seed = int.from_bytes(os.urandom(4), "little")
        self.root_seed = root_seed
        self._lock = threading.Lock()
        self._current = seed_to_stream(root_seed)
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def next_stream(self) -> RngStream:
        with self._lock:
            self._current = next_rng_stream(self._current, index=self._count)
            self._count += 1
            return self._current

    def streams(self, n: int) -> list[RngStream]:
        return [self.next_stream() for _ in range(n)]


_manager: Optional[RngStreamManager] = None
_manager_lock = threading.Lock()


def get_stream_manager() -> RngStreamManager:
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = RngStreamManager(get_settings().seed)
        return _manager


def set_root_seed(seed: Optional[int]) -> RngStreamManager:
    """Restart stream issuing from ``seed`` (``None`` picks a random root)."""
    global _manager
    with _manager_lock:
        _manager = RngStreamManager(seed)
        logger.debug(f"RNG stream manager reset with root seed {_manager.root_seed}")
        return _manager


def resolve_seed(seed: Any) -> Optional[RngStream]:
    """Map the ``seed`` option of a future onto a stream.

    ``False``/``None`` means no stream, ``True`` takes the next stream from the
    process-wide manager, an integer is turned into a stream of its own, a
    six-integer sequence or an :class:`RngStream` is used as given.
    """
    if seed is None or seed is False:
        return None
    if seed is True:
        return get_stream_manager().next_stream()
    if isinstance(seed, RngStream):
        return seed
    if isinstance(seed, int):
        return next_rng_stream(seed_to_stream(seed), index=0)
    if isinstance(seed, (tuple, list)):
        return RngStream(tuple(seed))
    raise TypeError(f"Unsupported seed specification: {seed!r}")


_current = threading.local()


def current_generator() -> random.Random:
    """The generator of the work item being evaluated.

    Outside a work item with a stream this is the ``random`` module's global
    generator.
    """
    gen = getattr(_current, "generator", None)
    return gen if gen is not None else random._inst


def activate_stream(stream: Optional[RngStream]) -> None:
    """Seed the default generators from ``stream`` for the current item."""
    if stream is None:
        _current.generator = None
        return
    _current.generator = MRG32k3a(stream)
    random.seed(stream.as_int())
    numpy = sys.modules.get("numpy")
    if numpy is not None:
        numpy.random.seed(list(stream.seed))


def default_rng_state() -> tuple:
    """Snapshot of the default generators' state."""
    state: tuple = (random.getstate(),)
    numpy = sys.modules.get("numpy")
    if numpy is not None:
        _, keys, pos, has_gauss, cached = numpy.random.get_state()
        state += (keys.tobytes(), pos, has_gauss, cached)
    return state


def save_default_rng() -> tuple:
    """Full state of the default generators, for ``restore_default_rng``."""
    numpy = sys.modules.get("numpy")
    numpy_state = numpy.random.get_state() if numpy is not None else None
    return random.getstate(), numpy_state


def restore_default_rng(saved: tuple) -> None:
    """Put the default generators back to a state from ``save_default_rng``."""
    state, numpy_state = saved
    random.setstate(state)
    numpy = sys.modules.get("numpy")
    if numpy is None:
        return
    if numpy_state is not None:
        numpy.random.set_state(numpy_state)
    else:
        # imported by the item, reseed as a fresh import would be
        numpy.random.seed()


def detect_unsafe_usage(before: tuple, after: tuple) -> bool:
    """Whether the default generators advanced between two snapshots.

    Only meaningful for work items evaluated without an assigned stream.
    """
    if before[0] != after[0]:
        return True
    # numpy may have been imported by the item itself
    return len(before) == len(after) and before != after
