"""
Kubelet-facing driver.

Translates batched NodePrepareResources / NodeUnprepareResources requests
into per-claim calls on ``DeviceState``. Each claim gets its own response;
a failing claim never aborts the rest of the batch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from dracpu.devices import ClaimDevice
from dracpu.discovery import Device
from dracpu.resource import ResourceClaim
from dracpu.state import DeviceState

logger = logging.getLogger(__name__)

ClaimGetter = Callable[[str, str], ResourceClaim]


@dataclass(frozen=True)
class ClaimRef:
    """Claim reference as sent by the kubelet."""

    uid: str
    namespace: str
    name: str


@dataclass
class NodePrepareResourceResponse:
    devices: list[ClaimDevice] = field(default_factory=list)
    error: str = ""


@dataclass
class NodeUnprepareResourceResponse:
    error: str = ""


class Driver:
    """
    Args:
        state: Node device state
        get_claim: Fetches the full ResourceClaim for (namespace, name)
    """

    def __init__(self, state: DeviceState, get_claim: ClaimGetter) -> None:
        self.state = state
        self.get_claim = get_claim
        self.running = True

    def resources(self) -> list[Device]:
        """Devices to publish in the node's resource slice."""
        devices = [self.state.allocatable[name] for name in sorted(self.state.allocatable)]
        logger.info(f"Publishing {len(devices)} devices")
        return devices

    def shutdown(self) -> None:
        """Stop serving; later prepare and unprepare calls get an error response."""
        self.running = False
        logger.info("Driver shut down")

    def node_prepare_resources(
        self, claims: list[ClaimRef]
    ) -> dict[str, NodePrepareResourceResponse]:
        logger.info(f"NodePrepareResources is called: number of claims: {len(claims)}")
        return {claim.uid: self._node_prepare_resource(claim) for claim in claims}

    def _node_prepare_resource(self, claim: ClaimRef) -> NodePrepareResourceResponse:
        if not self.running:
            return NodePrepareResourceResponse(
                error=f"driver is shut down, not preparing claim {claim.uid}"
            )

        try:
            resource_claim = self.get_claim(claim.namespace, claim.name)
        except Exception as e:
            logger.warning(f"Failed to fetch ResourceClaim {claim.namespace}/{claim.name}: {e}")
            return NodePrepareResourceResponse(
                error=f"failed to fetch ResourceClaim {claim.name} in namespace {claim.namespace}"
            )

        # Any failure stays scoped to this claim; the decoder and edit writer
        # are pluggable and may raise outside the driver's own hierarchy.
        try:
            prepared = self.state.prepare(resource_claim)
        except Exception as e:
            logger.warning(f"Error preparing devices for claim {claim.uid}: {e}")
            return NodePrepareResourceResponse(
                error=f"error preparing devices for claim {claim.uid}: {e}"
            )

        logger.info(
            f"Returning newly prepared devices for claim '{claim.uid}': "
            f"{[d.device_name for d in prepared]}"
        )
        return NodePrepareResourceResponse(devices=prepared)

    def node_unprepare_resources(
        self, claims: list[ClaimRef]
    ) -> dict[str, NodeUnprepareResourceResponse]:
        logger.info(f"NodeUnprepareResources is called: number of claims: {len(claims)}")
        return {claim.uid: self._node_unprepare_resource(claim) for claim in claims}

    def _node_unprepare_resource(self, claim: ClaimRef) -> NodeUnprepareResourceResponse:
        if not self.running:
            return NodeUnprepareResourceResponse(
                error=f"driver is shut down, not unpreparing claim {claim.uid}"
            )

        try:
            self.state.unprepare(claim.uid)
        except Exception as e:
            logger.warning(f"Error unpreparing devices for claim {claim.uid}: {e}")
            return NodeUnprepareResourceResponse(
                error=f"error unpreparing devices for claim {claim.uid}: {e}"
            )
        return NodeUnprepareResourceResponse()
