"""Services package for the relay.

This package provides:
- Target URL parsing and hostname policy
- Per-client admission control with fairness delays
- Streaming request/response relay
- CORS header construction
- Periodic eviction of idle admission state
"""

from relay.app.services.admission import (
    AdmissionController,
    AdmissionDecision,
    Reservation,
    ReservationState,
)
from relay.app.services.cors import CORSInjector
from relay.app.services.policy import ParsedTarget, PolicyValidator
from relay.app.services.public_address import resolve_public_address
from relay.app.services.reaper import StateReaper
from relay.app.services.scheduler import DelayScheduler
from relay.app.services.stream_relay import StreamRelay

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "Reservation",
    "ReservationState",
    "CORSInjector",
    "ParsedTarget",
    "PolicyValidator",
    "resolve_public_address",
    "StateReaper",
    "DelayScheduler",
    "StreamRelay",
]
