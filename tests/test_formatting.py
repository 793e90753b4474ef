"""Tests for display formatting helpers."""

from datetime import datetime, timezone

import pytest

from storage.base import EPOCH
from utils.formatting import format_bytes, format_timestamp


@pytest.mark.parametrize("num_bytes,expected", [
    (0, "0 B"),
    (-5, "0 B"),
    (512, "512 B"),
    (1024, "1 KB"),
    (1536, "1.5 KB"),
    (15 * 1024 ** 3, "15 GB"),
    (100 * 1024 ** 5, "100 PB"),
])
def test_format_bytes(num_bytes, expected):
    assert format_bytes(num_bytes) == expected


def test_format_timestamp():
    assert format_timestamp(datetime(2024, 3, 1, 10, 5, tzinfo=timezone.utc)) == \
        "2024-03-01 10:05"
    assert format_timestamp(EPOCH) == "-"
