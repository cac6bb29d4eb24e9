"""CloudAMQP control plane mock for testing.

This module provides an in-memory implementation of the ControlPlane
protocol plus a fake clock, so the orchestrator's wait loops can be driven
deterministically without network access or real sleeps.

Key Features:
- In-memory objects per resource type, keyed by composite identity
- Scripted fetch outcomes (not ready yet, gone, transport failure)
- Scripted job status sequences (pending -> running -> completed/failed)
- Scripted answers of "configured" endpoints (firewall)
- Call recording for asserting on what was (and was not) invoked
- Fake clock whose sleep advances time instantly

Usage:
    from cloudamqp_mock import FakeClock, MockControlPlane

    clock = FakeClock()
    api = MockControlPlane()
    orchestrator = ResourceOrchestrator(ALARM, api, clock=clock.monotonic, sleep=clock.sleep)
    ref = orchestrator.create({"type": "cpu", "enabled": True}, parent_id=1234)

    assert api.invocation_count("alarm") == 1
"""

from .clock import FakeClock
from .control_plane import Invocation, MockControlPlane
from .transport import MockTransport, json_response

__all__ = [
    "FakeClock",
    "Invocation",
    "MockControlPlane",
    "MockTransport",
    "json_response",
]
