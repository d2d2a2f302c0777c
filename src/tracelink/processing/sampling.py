# src/tracelink/processing/sampling.py
"""Keep/drop decisions for the first stage of EventProcessor.

Two modes:
- PROBABILISTIC: one uniform draw per call. Reprocessing the same event may
  give a different answer.
- DETERMINISTIC: the decision is a pure function of the event_id, so an
  event retried or reprocessed elsewhere is always kept or always dropped.
"""

from __future__ import annotations

import hashlib
import random

from tracelink.contracts.enums import SamplingMode

_HASH_SPACE = float(2**32)


def deterministic_fraction(event_id: str) -> float:
    """Map an event_id onto [0, 1) using the first 32 bits of its SHA-256."""
    digest = hashlib.sha256(event_id.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) / _HASH_SPACE


class Sampler:
    """Sampling decision for a configured rate and mode.

    Rates of 1.0 and 0.0 short-circuit without drawing or hashing.

    Thread Safety:
        random.Random is internally locked; deterministic mode holds no state.
    """

    def __init__(
        self,
        rate: float = 1.0,
        mode: SamplingMode = SamplingMode.PROBABILISTIC,
        *,
        rng: random.Random | None = None,
    ) -> None:
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"sample rate must be within [0.0, 1.0], got {rate}")
        self._rate = rate
        self._mode = mode
        self._rng = rng or random.Random()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def mode(self) -> SamplingMode:
        return self._mode

    def should_keep(self, event_id: str) -> bool:
        if self._rate >= 1.0:
            return True
        if self._rate <= 0.0:
            return False
        if self._mode == SamplingMode.DETERMINISTIC:
            return deterministic_fraction(event_id) < self._rate
        return self._rng.random() < self._rate
