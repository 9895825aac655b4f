"""
Resource claim model.

A trimmed-down view of the ``resource.k8s.io`` ResourceClaim: only the fields
the driver reads when preparing devices. Claims are owned by the protocol
layer; the driver never mutates them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AllocationConfigSource(str, Enum):
    CLASS = "FromClass"
    CLAIM = "FromClaim"


@dataclass
class OpaqueDeviceConfiguration:
    """Driver-specific parameters, decoded only by the owning driver."""

    driver: str
    parameters: Any = None


@dataclass
class DeviceAllocationConfiguration:
    source: str
    requests: list[str] = field(default_factory=list)
    opaque: OpaqueDeviceConfiguration | None = None


@dataclass
class DeviceRequestAllocationResult:
    request: str
    device: str
    pool: str = ""
    driver: str = ""


@dataclass
class AllocationResult:
    results: list[DeviceRequestAllocationResult] = field(default_factory=list)
    config: list[DeviceAllocationConfiguration] = field(default_factory=list)


def _mapping(value: Any, path: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"resource claim field {path} must be a mapping")
    return value


def _list(value: Any, path: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"resource claim field {path} must be a list")
    return value


def _required(data: dict[str, Any], key: str, path: str) -> str:
    value = data.get(key)
    if value is None or value == "":
        raise ValueError(f"resource claim is missing {path}.{key}")
    return str(value)


@dataclass
class ResourceClaim:
    uid: str
    namespace: str = ""
    name: str = ""
    allocation: AllocationResult | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceClaim:
        """
        Build a claim from a Kubernetes-shaped mapping.

        Reads ``metadata.{uid,namespace,name}`` and
        ``status.allocation.devices.{results,config}``. A missing
        ``status.allocation`` yields an unallocated claim.

        Raises:
            ValueError: If a required field is missing or a field has the
                wrong shape
        """
        data = _mapping(data, "root")
        metadata = _mapping(data.get("metadata"), "metadata")
        uid = _required(metadata, "uid", "metadata")

        allocation = None
        status = _mapping(data.get("status"), "status")
        if status.get("allocation") is not None:
            raw_allocation = _mapping(status["allocation"], "status.allocation")
            devices = _mapping(raw_allocation.get("devices"), "status.allocation.devices")

            results = []
            for i, r in enumerate(_list(devices.get("results"), "devices.results")):
                path = f"devices.results[{i}]"
                r = _mapping(r, path)
                results.append(
                    DeviceRequestAllocationResult(
                        request=_required(r, "request", path),
                        device=_required(r, "device", path),
                        pool=r.get("pool", ""),
                        driver=r.get("driver", ""),
                    )
                )

            configs = []
            for i, c in enumerate(_list(devices.get("config"), "devices.config")):
                path = f"devices.config[{i}]"
                c = _mapping(c, path)
                opaque = None
                if c.get("opaque") is not None:
                    raw_opaque = _mapping(c["opaque"], f"{path}.opaque")
                    opaque = OpaqueDeviceConfiguration(
                        driver=raw_opaque.get("driver", ""),
                        parameters=raw_opaque.get("parameters"),
                    )
                configs.append(
                    DeviceAllocationConfiguration(
                        source=c.get("source", ""),
                        requests=[str(req) for req in _list(c.get("requests"), f"{path}.requests")],
                        opaque=opaque,
                    )
                )
            allocation = AllocationResult(results=results, config=configs)

        return cls(
            uid=uid,
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            allocation=allocation,
        )
