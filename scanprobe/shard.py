"""Subshards that walk a cyclic multiplicative group to produce target addresses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

SHARD_DONE = 0
_MASK32 = 0xFFFFFFFF
_LIMIT32 = 1 << 32


@dataclass(frozen=True)
class Cycle:
    """A generator of the group modulo ``prime`` and a starting offset."""

    generator: int
    prime: int
    order: int
    offset: int = 0


@dataclass
class ShardState:
    """Per-subshard progress counters."""

    sent: int = 0
    tried_sent: int = 0
    blacklisted: int = 0
    whitelisted: int = 0
    failures: int = 0
    first_scanned: int = 0
    max_targets: int = 0


class Shard:
    """One subshard: a contiguous run of exponents of the cycle's generator.

    ``lookup_index`` maps an allowed-address index (0 .. ``max_index`` - 1) to
    the address to scan; elements whose index falls outside are skipped.
    """

    def __init__(
        self,
        shard_idx: int,
        num_shards: int,
        thread_idx: int,
        num_threads: int,
        max_total_targets: int,
        cycle: Cycle,
        max_index: int,
        lookup_index: Callable[[int], int],
        callback: Optional[Callable[[int], None]] = None,
    ) -> None:
        if num_shards <= 0:
            raise ValueError("number of shards must be positive")
        if num_threads <= 0:
            raise ValueError("number of threads must be positive")
        if not 0 <= shard_idx < num_shards:
            raise ValueError("shard index out of range")
        if not 0 <= thread_idx < num_threads:
            raise ValueError("thread index out of range")
        num_subshards = num_shards * num_threads
        num_elts = cycle.order
        if num_subshards >= num_elts:
            raise ValueError("more subshards than elements in the cycle")
        if max_total_targets and num_subshards > max_total_targets:
            raise ValueError("more subshards than maximum targets")

        # Subshard i of S covers exponents [floor(Q/S) * i, floor(Q/S) * (i+1)).
        sub_idx = shard_idx * num_threads + thread_idx
        step = num_elts // num_subshards
        exponent_begin = (step * sub_idx + cycle.offset) % num_elts
        exponent_end = (step * ((sub_idx + 1) % num_subshards) + cycle.offset) % num_elts

        self.first = pow(cycle.generator, exponent_begin, cycle.prime)
        self.last = pow(cycle.generator, exponent_end, cycle.prime)
        self.factor = cycle.generator
        self.modulus = cycle.prime
        self.current = self.first
        self.thread_id = thread_idx
        self.state = ShardState()
        if max_total_targets > 0:
            share = max_total_targets // num_subshards
            if sub_idx < max_total_targets % num_subshards:
                share += 1
            self.state.max_targets = share

        self._max_index = max_index
        self._lookup = lookup_index
        self._callback = callback
        self._roll_to_valid()

    def _is_valid(self, element: int) -> bool:
        return (element - 1) & _MASK32 < self._max_index

    def _roll_to_valid(self) -> None:
        if self.current != SHARD_DONE and self.current - 1 < self._max_index:
            return
        self.next_ip()

    def _next_elem(self) -> int:
        while True:
            self.current = (self.current * self.factor) % self.modulus
            if self.current < _LIMIT32:
                return self.current

    def current_ip(self) -> int:
        """Address at the shard's current position, or SHARD_DONE."""
        if self.current == SHARD_DONE:
            return SHARD_DONE
        return self._lookup(self.current - 1)

    def next_ip(self) -> int:
        """Advance to the next allowed address; SHARD_DONE once depleted."""
        if self.current == SHARD_DONE:
            return SHARD_DONE
        while True:
            candidate = self._next_elem()
            if candidate == self.last:
                self.current = SHARD_DONE
                return SHARD_DONE
            if self._is_valid(candidate):
                self.state.whitelisted += 1
                return self._lookup(candidate - 1)
            self.state.blacklisted += 1

    def finish(self) -> None:
        """Report completion of this subshard to its callback."""
        if self._callback is not None:
            self._callback(self.thread_id)