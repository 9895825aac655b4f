"""
CDI spec file handling.

The container runtime reads Container Device Interface specs from the CDI
root. The driver writes one common spec (edits applied to every container
using any of its devices) and one transient spec per prepared claim.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from dracpu.checkpoint import FileStore
from dracpu.defaults import (
    CDI_CLASS,
    CDI_COMMON_DEVICE_NAME,
    CDI_VENDOR,
    CDI_VERSION,
    DEFAULT_CDI_ROOT,
    DRIVER_NAME,
)
from dracpu.devices import ContainerEdits, PreparedDevices
from dracpu.errors import EditDeleteError, EditPersistError, StorageError

logger = logging.getLogger(__name__)


def _edits_to_spec(edits: ContainerEdits) -> dict[str, Any]:
    spec: dict[str, Any] = {}
    if edits.env:
        spec["env"] = list(edits.env)
    if edits.device_nodes:
        spec["deviceNodes"] = [{"path": path} for path in edits.device_nodes]
    return spec


class CDIHandler:
    """Writes and removes CDI spec files for prepared claims."""

    def __init__(
        self,
        cdi_root: str | Path = DEFAULT_CDI_ROOT,
        node_name: str = "",
        vendor: str = CDI_VENDOR,
        device_class: str = CDI_CLASS,
    ) -> None:
        self.cdi_root = Path(cdi_root)
        self.node_name = node_name
        self.vendor = vendor
        self.device_class = device_class
        self._store = FileStore(self.cdi_root)

    @property
    def kind(self) -> str:
        return f"{self.vendor}/{self.device_class}"

    def _spec_name(self, suffix: str) -> str:
        return f"{self.vendor}-{self.device_class}_{suffix}.yaml"

    def _write_spec(self, name: str, devices: list[dict[str, Any]]) -> None:
        spec = {"cdiVersion": CDI_VERSION, "kind": self.kind, "devices": devices}
        content = yaml.safe_dump(spec, sort_keys=False, default_flow_style=False)
        self._store.write(name, content.encode("utf-8"))

    def create_common_spec_file(self) -> None:
        """
        Raises:
            EditPersistError: If the spec file cannot be written
        """
        edits = ContainerEdits(
            env=[
                f"KUBERNETES_NODE_NAME={self.node_name}",
                f"DRA_RESOURCE_DRIVER_NAME={DRIVER_NAME}",
            ]
        )
        name = self._spec_name(CDI_COMMON_DEVICE_NAME)
        try:
            self._write_spec(
                name, [{"name": CDI_COMMON_DEVICE_NAME, "containerEdits": _edits_to_spec(edits)}]
            )
        except StorageError as e:
            raise EditPersistError(f"unable to write common CDI spec {name}: {e}") from e
        logger.debug(f"Wrote common CDI spec {self.cdi_root / name}")

    def write_claim_edits(self, claim_uid: str, prepared_devices: PreparedDevices) -> None:
        """
        Write the transient spec for one claim, replacing any earlier copy.

        Raises:
            EditPersistError: If the spec file cannot be written
        """
        devices = [
            {
                "name": f"{claim_uid}-{pd.device.device_name}",
                "containerEdits": _edits_to_spec(pd.container_edits),
            }
            for pd in prepared_devices
        ]
        name = self._spec_name(claim_uid)
        try:
            self._write_spec(name, devices)
        except (StorageError, ValueError) as e:
            raise EditPersistError(f"unable to write CDI spec for claim {claim_uid}: {e}") from e
        logger.debug(f"Wrote CDI spec {self.cdi_root / name}")

    def delete_claim_edits(self, claim_uid: str) -> None:
        """
        Remove the transient spec for one claim. Missing files are not an error.

        Raises:
            EditDeleteError: If an existing spec file cannot be removed
        """
        try:
            self._store.delete(self._spec_name(claim_uid))
        except (StorageError, ValueError) as e:
            raise EditDeleteError(f"unable to delete CDI spec for claim {claim_uid}: {e}") from e

    def get_claim_devices(self, claim_uid: str, devices: list[str]) -> list[str]:
        """Fully-qualified CDI device names for a claim, common device first."""
        ids = [f"{self.kind}={CDI_COMMON_DEVICE_NAME}"]
        ids.extend(f"{self.kind}={claim_uid}-{device}" for device in devices)
        return ids
