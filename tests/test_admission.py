"""Tests for admission control and reservation release."""

import asyncio
import time

import pytest

from relay.app.exceptions import AdmissionDeniedError
from relay.app.services.admission import AdmissionController, ReservationState


class TestReserve:

    @pytest.fixture
    def controller(self):
        return AdmissionController(max_concurrent_per_ip=15, delay_increment_ms=500)

    def test_first_request_is_not_delayed(self, controller):
        decision = controller.reserve("203.0.113.7", "api.example.com")

        assert decision.accepted is True
        assert decision.delay_ms == 0
        assert controller.client_count("203.0.113.7") == 1
        assert controller.hostname_count("api.example.com") == 1

    def test_concurrent_requests_same_client_same_host(self, controller):
        """The i-th concurrent request waits 2 * i * increment."""
        delays = [
            controller.reserve("203.0.113.7", "api.example.com").delay_ms
            for _ in range(5)
        ]
        assert delays == [0, 1000, 2000, 3000, 4000]

    def test_host_load_from_other_clients_delays(self, controller):
        controller.reserve("203.0.113.7", "api.example.com")
        controller.reserve("203.0.113.8", "api.example.com")

        decision = controller.reserve("203.0.113.9", "api.example.com")
        assert decision.delay_ms == 1000

    def test_client_load_on_other_hosts_delays(self, controller):
        controller.reserve("203.0.113.7", "a.example.com")

        decision = controller.reserve("203.0.113.7", "b.example.com")
        assert decision.delay_ms == 500

    def test_cap_rejects_without_changing_counts(self):
        controller = AdmissionController(max_concurrent_per_ip=3, delay_increment_ms=10)
        for _ in range(3):
            controller.reserve("203.0.113.7", "api.example.com")

        with pytest.raises(AdmissionDeniedError) as exc_info:
            controller.reserve("203.0.113.7", "api.example.com")

        assert exc_info.value.status_code == 429
        assert controller.client_count("203.0.113.7") == 3
        assert controller.hostname_count("api.example.com") == 3

    def test_sixteenth_request_rejected(self, controller):
        for _ in range(15):
            controller.reserve("203.0.113.7", "api.example.com")

        with pytest.raises(AdmissionDeniedError):
            controller.reserve("203.0.113.7", "api.example.com")

        # Another client is unaffected
        assert controller.reserve("203.0.113.8", "api.example.com").accepted is True

    def test_zero_increment_never_delays(self):
        controller = AdmissionController(delay_increment_ms=0)
        for _ in range(4):
            assert controller.reserve("203.0.113.7", "api.example.com").delay_ms == 0


class TestRelease:

    def test_release_decrements_both_counters(self):
        controller = AdmissionController()
        controller.reserve("203.0.113.7", "api.example.com")

        controller.release("203.0.113.7", "api.example.com")

        assert controller.client_count("203.0.113.7") == 0
        assert controller.hostname_count("api.example.com") == 0

    def test_release_never_goes_negative(self):
        controller = AdmissionController()
        controller.reserve("203.0.113.7", "api.example.com")

        controller.release("203.0.113.7", "api.example.com")
        controller.release("203.0.113.7", "api.example.com")

        assert controller.client_count("203.0.113.7") == 0
        assert controller.hostname_count("api.example.com") == 0

    def test_release_unknown_entries_is_noop(self):
        controller = AdmissionController()
        controller.release("198.51.100.1", "nowhere.example.com")
        assert controller.get_stats()["stored_clients"] == 0

    def test_complete_without_grace_releases_immediately(self):
        controller = AdmissionController()
        reservation = controller.reserve("203.0.113.7", "api.example.com").reservation

        reservation.complete(0)

        assert reservation.state is ReservationState.RELEASED
        assert controller.client_count("203.0.113.7") == 0

    def test_complete_twice_releases_once(self):
        controller = AdmissionController()
        first = controller.reserve("203.0.113.7", "api.example.com").reservation
        controller.reserve("203.0.113.7", "api.example.com")

        first.complete(0)
        first.complete(0)

        assert controller.client_count("203.0.113.7") == 1
        assert controller.hostname_count("api.example.com") == 1


class TestReservationTimers:

    @pytest.mark.asyncio
    async def test_grace_release_restores_counters(self):
        controller = AdmissionController()
        reservations = [
            controller.reserve("203.0.113.7", "api.example.com").reservation
            for _ in range(3)
        ]
        for reservation in reservations:
            reservation.arm_guard(10)
            reservation.complete(0.05)

        # Held through the grace period
        assert controller.client_count("203.0.113.7") == 3

        await asyncio.sleep(0.15)

        assert controller.client_count("203.0.113.7") == 0
        assert controller.hostname_count("api.example.com") == 0
        assert all(r.state is ReservationState.RELEASED for r in reservations)

    @pytest.mark.asyncio
    async def test_guard_releases_when_completion_never_comes(self):
        controller = AdmissionController()
        reservation = controller.reserve("203.0.113.7", "api.example.com").reservation
        controller.reserve("203.0.113.7", "api.example.com")

        reservation.arm_guard(0.02)
        await asyncio.sleep(0.1)

        assert reservation.state is ReservationState.GUARD_FIRED
        assert controller.client_count("203.0.113.7") == 1

        # Late completion after the guard fired must not release again
        reservation.complete(0)
        assert controller.client_count("203.0.113.7") == 1

    @pytest.mark.asyncio
    async def test_guard_includes_delay(self):
        controller = AdmissionController(delay_increment_ms=100)
        controller.reserve("203.0.113.7", "api.example.com")
        delayed = controller.reserve("203.0.113.7", "api.example.com").reservation
        assert delayed.delay_ms == 200

        delayed.arm_guard(0.01)
        await asyncio.sleep(0.05)
        assert delayed.state is ReservationState.PENDING

        await asyncio.sleep(0.25)
        assert delayed.state is ReservationState.GUARD_FIRED

    @pytest.mark.asyncio
    async def test_completion_cancels_guard(self):
        controller = AdmissionController()
        reservation = controller.reserve("203.0.113.7", "api.example.com").reservation
        controller.reserve("203.0.113.7", "api.example.com")

        reservation.arm_guard(0.05)
        reservation.complete(0.01)
        await asyncio.sleep(0.15)

        assert reservation.state is ReservationState.RELEASED
        assert controller.client_count("203.0.113.7") == 1


class TestDisabled:

    def test_disabled_controller_admits_everything(self):
        controller = AdmissionController(max_concurrent_per_ip=1, enabled=False)

        decisions = [controller.reserve("203.0.113.7", "api.example.com") for _ in range(5)]

        assert all(d.accepted for d in decisions)
        assert all(d.delay_ms == 0 for d in decisions)
        assert controller.get_stats()["stored_clients"] == 0

    def test_disabled_reservation_complete_is_harmless(self):
        controller = AdmissionController(enabled=False)
        reservation = controller.reserve("203.0.113.7", "api.example.com").reservation

        reservation.complete(0)

        assert reservation.state is ReservationState.RELEASED


class TestSweep:

    def test_sweep_evicts_idle_entries(self):
        controller = AdmissionController()
        controller.reserve("203.0.113.7", "api.example.com")
        controller.release("203.0.113.7", "api.example.com")

        removed = controller.sweep(retention_seconds=3600)

        assert removed == 2
        stats = controller.get_stats()
        assert stats["stored_clients"] == 0
        assert stats["stored_hostnames"] == 0

    def test_sweep_keeps_recent_active_entries(self):
        controller = AdmissionController()
        controller.reserve("203.0.113.7", "api.example.com")

        assert controller.sweep(retention_seconds=3600) == 0
        assert controller.client_count("203.0.113.7") == 1

    def test_sweep_evicts_stale_active_entries(self):
        controller = AdmissionController()
        controller.reserve("203.0.113.7", "api.example.com")

        removed = controller.sweep(retention_seconds=3600, now=time.monotonic() + 7200)

        assert removed == 2
        assert controller.client_count("203.0.113.7") == 0

    def test_release_after_eviction_is_noop(self):
        controller = AdmissionController()
        reservation = controller.reserve("203.0.113.7", "api.example.com").reservation
        controller.sweep(retention_seconds=3600, now=time.monotonic() + 7200)

        reservation.complete(0)

        assert controller.get_stats()["stored_clients"] == 0

    def test_stats(self):
        controller = AdmissionController()
        controller.reserve("203.0.113.7", "a.example.com")
        controller.reserve("203.0.113.8", "a.example.com")
        controller.reserve("203.0.113.8", "b.example.com")

        stats = controller.get_stats()
        assert stats["enabled"] is True
        assert stats["stored_clients"] == 2
        assert stats["stored_hostnames"] == 2
        assert stats["active_requests"] == 3
        assert stats["waiting"] == 0
