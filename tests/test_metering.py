"""Tests for credit arithmetic — charges and proportional refunds."""

from __future__ import annotations

from datetime import timedelta

import pytest

from orchestrator.metering import (
    compute_refund,
    credits_needed,
    paid_until_after,
    validate_hours,
)
from tests.conftest import T0


class TestCharges:
    def test_credits_needed(self):
        assert credits_needed(3, 10) == 30

    @pytest.mark.parametrize("hours", [0, -1, 1.5, True, "2"])
    def test_rejects_invalid_hours(self, hours):
        with pytest.raises(ValueError):
            validate_hours(hours)

    def test_paid_until(self):
        assert paid_until_after(T0, 2) == T0 + timedelta(hours=2)


class TestRefund:
    def test_stop_at_half_time(self):
        """40 credits over 4h, stopped after exactly 2h → 20 back."""
        paid_until = T0 + timedelta(hours=4)
        assert compute_refund(40, T0, paid_until, T0 + timedelta(hours=2)) == 20

    def test_floors_fractional_credit(self):
        paid_until = T0 + timedelta(hours=1)
        # 10 credits, 1/3 of the hour unused → 3.33 → 3
        assert compute_refund(10, T0, paid_until, T0 + timedelta(minutes=40)) == 3

    def test_immediate_stop_refunds_everything(self):
        assert compute_refund(10, T0, T0 + timedelta(hours=1), T0) == 10

    def test_after_paid_until_refunds_nothing(self):
        paid_until = T0 + timedelta(hours=1)
        assert compute_refund(10, T0, paid_until, paid_until + timedelta(seconds=1)) == 0

    def test_clock_before_creation_caps_at_charge(self):
        paid_until = T0 + timedelta(hours=1)
        assert compute_refund(10, T0, paid_until, T0 - timedelta(minutes=5)) == 10

    def test_zero_length_window(self):
        assert compute_refund(10, T0, T0, T0) == 0

    def test_extension_widens_window(self):
        """1h at 10/h then +1h: 20 credits over 2h; stop at 1h → 10 back."""
        paid_until = T0 + timedelta(hours=2)
        assert compute_refund(20, T0, paid_until, T0 + timedelta(hours=1)) == 10
