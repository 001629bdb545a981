"""
Case number generation.

Format: PREFIX-YYYYMM-RRRR, e.g. DC-202610-4821. The random part is not checked
against storage; the service retries the insert when the unique index rejects
a duplicate.
"""

import random
import re
from datetime import datetime
from typing import Callable, Optional

CASE_NUMBER_PATTERN = re.compile(r"^[A-Z]+-\d{6}-\d{4}$")


class CaseNumberGenerator:
    """Produces human-readable case identifiers"""

    def __init__(
        self,
        prefix: str = "DC",
        clock: Callable[[], datetime] = datetime.utcnow,
        rng: Optional[random.Random] = None,
    ):
        if not re.fullmatch(r"[A-Z]+", prefix or ""):
            raise ValueError(f"Case number prefix must be upper-case letters, got {prefix!r}")
        self.prefix = prefix
        self._clock = clock
        self._rng = rng or random.Random()

    def generate(self) -> str:
        now = self._clock()
        suffix = self._rng.randint(1000, 9999)
        return f"{self.prefix}-{now.year:04d}{now.month:02d}-{suffix}"


def is_valid_case_number(value: str) -> bool:
    return bool(CASE_NUMBER_PATTERN.match(value or ""))
