"""Prepared device records and their checkpoint representation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dracpu.errors import StorageCorruptError


@dataclass
class ContainerEdits:
    """Runtime edits applied to every container that uses a device."""

    env: list[str] = field(default_factory=list)
    device_nodes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"env": list(self.env), "deviceNodes": list(self.device_nodes)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerEdits:
        return cls(env=list(data.get("env") or []), device_nodes=list(data.get("deviceNodes") or []))


@dataclass
class ClaimDevice:
    """The device entry returned to the kubelet for one allocation result."""

    request_names: list[str]
    pool_name: str
    device_name: str
    cdi_device_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestNames": list(self.request_names),
            "poolName": self.pool_name,
            "deviceName": self.device_name,
            "cdiDeviceIDs": list(self.cdi_device_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimDevice:
        return cls(
            request_names=list(data["requestNames"]),
            pool_name=data["poolName"],
            device_name=data["deviceName"],
            cdi_device_ids=list(data.get("cdiDeviceIDs") or []),
        )


@dataclass
class PreparedDevice:
    device: ClaimDevice
    container_edits: ContainerEdits = field(default_factory=ContainerEdits)

    def to_dict(self) -> dict[str, Any]:
        return {"device": self.device.to_dict(), "containerEdits": self.container_edits.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PreparedDevice:
        return cls(
            device=ClaimDevice.from_dict(data["device"]),
            container_edits=ContainerEdits.from_dict(data.get("containerEdits") or {}),
        )


PreparedDevices = list[PreparedDevice]
PreparedClaims = dict[str, PreparedDevices]


def get_devices(prepared: PreparedDevices) -> list[ClaimDevice]:
    return [pd.device for pd in prepared]


def prepared_claims_to_dict(claims: PreparedClaims) -> dict[str, list[dict[str, Any]]]:
    return {uid: [pd.to_dict() for pd in prepared] for uid, prepared in claims.items()}


def prepared_claims_from_dict(data: Any) -> PreparedClaims:
    """
    Raises:
        StorageCorruptError: If the payload does not have the expected shape
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise StorageCorruptError(
            f"preparedClaims has invalid type: {type(data).__name__}, expected mapping"
        )

    claims: PreparedClaims = {}
    for uid, entries in data.items():
        if not isinstance(entries, list):
            raise StorageCorruptError(f"prepared devices for claim {uid} are not a list")
        try:
            claims[str(uid)] = [PreparedDevice.from_dict(entry) for entry in entries]
        except (KeyError, TypeError, AttributeError) as e:
            raise StorageCorruptError(f"malformed prepared device for claim {uid}: {e}") from e
    return claims
