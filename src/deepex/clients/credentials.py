"""
Credential pool with round-robin rotation and timed penalties.

A slot that fails is penalized for a cooldown; penalties lapse on their own
the next time the pool is scanned after ``penalized_until``. Selection never
fails while the pool is non-empty: if every slot is penalized, the one that
recovers soonest is handed out.
"""

import os
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from ..observability.logging import get_logger
from .errors import ConfigurationError

logger = get_logger(__name__)


@dataclass
class CredentialSlot:
    id: str
    secret: str = field(repr=False)
    last_used_at: float = 0.0
    consecutive_errors: int = 0
    is_penalized: bool = False
    penalized_until: float = 0.0

    def clear_penalty(self) -> None:
        self.is_penalized = False
        self.penalized_until = 0.0


class CredentialPool:
    """Rotates across a fixed set of upstream credentials."""

    def __init__(
        self,
        name: str,
        slots: list[CredentialSlot],
        clock: Callable[[], float] = time.monotonic,
    ):
        if not slots:
            raise ConfigurationError(f"credential pool '{name}' has no credentials")
        self.name = name
        self._slots = list(slots)
        self._clock = clock
        self._cursor = 0
        self._by_id = {slot.id: slot for slot in self._slots}

    @classmethod
    def from_secrets(
        cls, name: str, secrets: list[str], clock: Callable[[], float] = time.monotonic
    ) -> "CredentialPool":
        slots = [CredentialSlot(id=f"{name}-{i + 1}", secret=s) for i, s in enumerate(secrets)]
        return cls(name, slots, clock)

    @classmethod
    def from_environment(
        cls,
        name: str,
        prefix: str,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CredentialPool":
        """Build a pool from ``PREFIX_1..PREFIX_N``, falling back to ``PREFIX``."""
        return cls.from_secrets(name, load_numbered(prefix, environ), clock)

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def slots(self) -> list[CredentialSlot]:
        return list(self._slots)

    def _refresh(self, slot: CredentialSlot, now: float) -> None:
        if slot.is_penalized and now >= slot.penalized_until:
            slot.clear_penalty()
            logger.debug("Credential penalty expired", pool=self.name, slot=slot.id)

    def select(self) -> CredentialSlot:
        """Return the next usable credential."""
        now = self._clock()
        count = len(self._slots)
        for offset in range(count):
            index = (self._cursor + offset) % count
            slot = self._slots[index]
            self._refresh(slot, now)
            if not slot.is_penalized:
                self._cursor = (index + 1) % count
                slot.last_used_at = now
                return slot

        soonest = min(self._slots, key=lambda s: s.penalized_until)
        logger.warning(
            "All credentials penalized, using soonest to recover",
            pool=self.name,
            slot=soonest.id,
            recovers_in=round(soonest.penalized_until - now, 1),
        )
        soonest.last_used_at = now
        return soonest

    def report_failure(self, slot_id: str, penalty_seconds: float) -> None:
        slot = self._by_id.get(slot_id)
        if slot is None:
            return
        slot.is_penalized = True
        slot.penalized_until = self._clock() + penalty_seconds
        slot.consecutive_errors += 1
        logger.debug(
            "Credential penalized",
            pool=self.name,
            slot=slot_id,
            penalty_s=penalty_seconds,
            consecutive_errors=slot.consecutive_errors,
        )

    def report_success(self, slot_id: str) -> None:
        slot = self._by_id.get(slot_id)
        if slot is None:
            return
        slot.clear_penalty()
        slot.consecutive_errors = 0

    def available_count(self) -> int:
        now = self._clock()
        for slot in self._slots:
            self._refresh(slot, now)
        return sum(1 for slot in self._slots if not slot.is_penalized)


def load_numbered(prefix: str, environ: Mapping[str, str] | None = None) -> list[str]:
    """Collect ``PREFIX_<n>`` values in numeric order; ``PREFIX`` alone is the fallback."""
    env = os.environ if environ is None else environ
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)$")
    numbered = sorted(
        (int(match.group(1)), value)
        for key, value in env.items()
        if (match := pattern.match(key)) and value.strip()
    )
    if numbered:
        return [value.strip() for _, value in numbered]
    single = env.get(prefix, "").strip()
    return [single] if single else []


def load_account_pairs(
    id_prefix: str, key_prefix: str, environ: Mapping[str, str] | None = None
) -> list[CredentialSlot]:
    """Pair ``ID_PREFIX_<n>`` with ``KEY_PREFIX_<n>``; stops at the first gap."""
    env = os.environ if environ is None else environ
    slots = []
    index = 1
    while True:
        account_id = env.get(f"{id_prefix}_{index}", "").strip()
        api_key = env.get(f"{key_prefix}_{index}", "").strip()
        if not account_id or not api_key:
            break
        slots.append(CredentialSlot(id=account_id, secret=api_key))
        index += 1
    return slots
