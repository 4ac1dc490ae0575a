"""
FleetWarden: Probe

Bounded outbound health and metrics probes against managed services.
"""

from fleetwarden.systems.probe.client import HttpProbeClient, ProbeClient
from fleetwarden.systems.probe.types import (
    ProbeFailure,
    ProbeFailureKind,
    ProbeOutcome,
    ProbeResult,
)

__all__ = [
    "HttpProbeClient",
    "ProbeClient",
    "ProbeFailure",
    "ProbeFailureKind",
    "ProbeOutcome",
    "ProbeResult",
]
