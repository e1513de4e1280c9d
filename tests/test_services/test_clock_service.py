"""Tests for the server clock."""

from __future__ import annotations

from unittest.mock import patch

from backend.services.clock_service import next_receipt_time, now_ms


class TestClock:
    def test_now_ms_is_epoch_milliseconds(self) -> None:
        # 2020-01-01 in ms; guards against returning seconds
        assert now_ms() > 1_577_836_800_000

    def test_first_receipt_uses_wall_clock(self) -> None:
        with patch("backend.services.clock_service.now_ms", return_value=1234):
            assert next_receipt_time(None) == 1234

    def test_wall_clock_ahead_wins(self) -> None:
        with patch("backend.services.clock_service.now_ms", return_value=2000):
            assert next_receipt_time(1000) == 2000

    def test_same_millisecond_is_bumped(self) -> None:
        with patch("backend.services.clock_service.now_ms", return_value=1000):
            assert next_receipt_time(1000) == 1001

    def test_clock_step_backwards_is_absorbed(self) -> None:
        with patch("backend.services.clock_service.now_ms", return_value=500):
            assert next_receipt_time(1000) == 1001
