"""
Case number generation tests
"""

import random
from datetime import datetime

import pytest

from discipline_lite.case_numbers import CaseNumberGenerator, is_valid_case_number


def test_generated_number_carries_prefix_and_month():
    generator = CaseNumberGenerator(clock=lambda: datetime(2026, 3, 14, 9, 30))

    number = generator.generate()

    assert number.startswith("DC-202603-")
    assert is_valid_case_number(number)


def test_random_suffix_stays_four_digits():
    generator = CaseNumberGenerator(rng=random.Random(7))

    for _ in range(200):
        suffix = int(generator.generate().rsplit("-", 1)[1])
        assert 1000 <= suffix <= 9999


def test_custom_prefix():
    generator = CaseNumberGenerator(prefix="DISC", clock=lambda: datetime(2025, 12, 1))

    assert generator.generate().startswith("DISC-202512-")


@pytest.mark.parametrize("prefix", ["", "dc", "D1", "D-C"])
def test_invalid_prefix_rejected(prefix):
    with pytest.raises(ValueError):
        CaseNumberGenerator(prefix=prefix)


@pytest.mark.parametrize("value,expected", [
    ("DC-202610-4821", True),
    ("DC-20261-4821", False),
    ("dc-202610-4821", False),
    ("DC-202610-482", False),
    ("", False),
])
def test_is_valid_case_number(value, expected):
    assert is_valid_case_number(value) is expected
