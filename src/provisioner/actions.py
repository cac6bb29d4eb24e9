"""Instance actions that settle across every node.

Upgrades and node restarts are accepted by the control plane immediately but
take effect node by node. They are complete once every node of the instance
reports `configured`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from .client import ApiResponse
from .config import PollConfig
from .models import NodeState
from .poller import Cancellation, Poller
from .resource_types import INSTANCE
from .waiters import AttributeCondition, wait_for_all

logger = logging.getLogger(__name__)

NODES_CONFIGURED = AttributeCondition("configured", True)


class InstanceActionApi(Protocol):
    """Collaborator primitives the actions delegate to (ControlPlaneApi)."""

    def list_nodes(self, instance_id: int) -> list[NodeState]: ...

    def upgrade_rabbitmq(self, instance_id: int, version: str | None = None) -> ApiResponse: ...


class InstanceActions:
    """Node-level waits and upgrades for one instance."""

    def __init__(
        self,
        api: InstanceActionApi,
        config: PollConfig | None = None,
        *,
        cancellation: Cancellation | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self._api = api
        self._poller = Poller(
            config or INSTANCE.poll, cancellation=cancellation, clock=clock, sleep=sleep
        )

    def wait_for_nodes_configured(self, instance_id: int) -> list[NodeState]:
        return wait_for_all(
            lambda: self._api.list_nodes(instance_id),
            NODES_CONFIGURED,
            self._poller,
            subject=f"nodes of instance {instance_id}",
        )

    def upgrade_rabbitmq(self, instance_id: int, version: str | None = None) -> bool:
        """Upgrade the broker and wait until every node is configured again.

        Returns:
            False when the instance already runs the latest version, else True.
        """
        response = self._api.upgrade_rabbitmq(instance_id, version)
        if version is None and response.status_code == 200:
            logger.info(
                "Already at highest possible version", extra={"instance_id": instance_id}
            )
            return False

        logger.info(
            "Upgrade started, waiting for nodes",
            extra={"instance_id": instance_id, "version": version or "latest"},
        )
        self.wait_for_nodes_configured(instance_id)
        return True
