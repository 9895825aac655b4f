"""
Claim preparation state.

``DeviceState`` owns the prepared-claims checkpoint and turns resource claims
into prepared devices. A claim is either absent or prepared; ``prepare`` and
``unprepare`` move between the two and are both idempotent, so the kubelet
may redeliver either call after a timeout.

Each transaction loads the full checkpoint, mutates it and writes the full
checkpoint back, all while holding a single lock shared by every claim and a file lock
shared with other processes using the same plugin directory.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from dracpu import cpuset
from dracpu.api import CpuConfig, Decoder, SharingStrategy, default_cpu_config
from dracpu.cdi import CDIHandler
from dracpu.checkpoint import CheckpointStore, FileStore
from dracpu.defaults import DRIVER_NAME, ENV_PREFIX
from dracpu.devices import (
    ClaimDevice,
    ContainerEdits,
    PreparedClaims,
    PreparedDevice,
    PreparedDevices,
    get_devices,
)
from dracpu.discovery import AllocatableDevices, enumerate_all_possible_devices
from dracpu.errors import (
    CheckpointWriteError,
    ClaimNotAllocatedError,
    DeviceNotAllocatableError,
    EditError,
    InvalidConfigError,
    StorageError,
    UnsupportedConfigKindError,
    UnsupportedConfigSourceError,
)
from dracpu.resource import (
    AllocationConfigSource,
    DeviceAllocationConfiguration,
    DeviceRequestAllocationResult,
    ResourceClaim,
)

if TYPE_CHECKING:
    from dracpu.config import DriverConfig

logger = logging.getLogger(__name__)

PerDeviceContainerEdits = dict[str, ContainerEdits]


class ConfigDecoder(Protocol):
    def decode(self, raw: Any) -> Any: ...


class EditWriter(Protocol):
    def write_claim_edits(self, claim_uid: str, prepared_devices: PreparedDevices) -> None: ...

    def delete_claim_edits(self, claim_uid: str) -> None: ...

    def get_claim_devices(self, claim_uid: str, devices: list[str]) -> list[str]: ...


@dataclass
class OpaqueDeviceConfig:
    """A decoded config together with the requests it is restricted to."""

    requests: list[str] = field(default_factory=list)
    config: Any = None

    def matches(self, request: str) -> bool:
        return not self.requests or request in self.requests


# ============================================================================
# CONFIG RESOLUTION
# ============================================================================


def get_opaque_device_configs(
    decoder: ConfigDecoder,
    driver_name: str,
    possible_configs: Iterable[DeviceAllocationConfiguration],
) -> list[OpaqueDeviceConfig]:
    """
    Return this driver's configs from ``possible_configs``, lowest precedence first.

    Configs come either from the device class or from the claim itself.
    Claim configs outrank class configs, and within one source a config listed
    later outranks one listed earlier.

    Configs owned by other drivers are skipped: a single request can be
    satisfied by several drivers, each of which only reads its own configs.

    Raises:
        UnsupportedConfigSourceError: If a config has an unknown source
        UnsupportedConfigKindError: If a config carries no opaque payload or
            the payload does not decode
    """
    class_configs: list[DeviceAllocationConfiguration] = []
    claim_configs: list[DeviceAllocationConfiguration] = []
    for cfg in possible_configs:
        if cfg.source == AllocationConfigSource.CLASS.value:
            class_configs.append(cfg)
        elif cfg.source == AllocationConfigSource.CLAIM.value:
            claim_configs.append(cfg)
        else:
            raise UnsupportedConfigSourceError(cfg.source)

    result_configs: list[OpaqueDeviceConfig] = []
    for cfg in class_configs + claim_configs:
        # A missing payload means an API extension this driver predates.
        if cfg.opaque is None:
            raise UnsupportedConfigKindError("only opaque parameters are supported by this driver")

        if cfg.opaque.driver != driver_name:
            continue

        decoded = decoder.decode(cfg.opaque.parameters)
        result_configs.append(OpaqueDeviceConfig(requests=list(cfg.requests), config=decoded))

    return result_configs


def select_config(configs: list[OpaqueDeviceConfig], request: str) -> OpaqueDeviceConfig | None:
    """Highest-precedence config that applies to ``request``."""
    for config in reversed(configs):
        if config.matches(request):
            return config
    return None


# ============================================================================
# CONFIG APPLICATION
# ============================================================================


def _env_name(device: str) -> str:
    suffix = device[len("cpu-") :] if device.startswith("cpu-") else device
    return f"{ENV_PREFIX}_{suffix.replace('-', '_').upper()}"


def apply_config(
    config: CpuConfig, results: list[DeviceRequestAllocationResult]
) -> PerDeviceContainerEdits:
    """
    Normalize, validate and apply one config to the results it governs.

    No hardware is reconfigured; the config is expressed as environment
    variables injected into every container that uses the device.

    Raises:
        InvalidConfigError: If the config fails validation
    """
    config.normalize()
    config.validate()

    per_device_edits: PerDeviceContainerEdits = {}
    for result in results:
        name = _env_name(result.device)
        envs = [f"{name}={result.device}"]

        sharing = config.sharing
        if sharing is not None:
            envs.append(f"{name}_SHARING_STRATEGY={sharing.strategy}")
            strategy = SharingStrategy(sharing.strategy)
            if strategy is SharingStrategy.TIME_SLICING:
                ts_config = sharing.get_time_slicing_config()
                envs.append(f"{name}_TIMESLICE_INTERVAL={ts_config.interval}")
            elif strategy is SharingStrategy.SPACE_PARTITIONING:
                sp_config = sharing.get_space_partitioning_config()
                envs.append(f"{name}_PARTITION_COUNT={sp_config.partition_count}")
            else:
                raise InvalidConfigError(f"unhandled sharing strategy: {strategy.value}")

        per_device_edits[result.device] = ContainerEdits(env=envs)

    return per_device_edits


# ============================================================================
# DEVICE STATE
# ============================================================================


class DeviceState:
    """
    Prepared-claim bookkeeping for one node.

    All public methods hold ``self._lock`` for their full duration, and
    transactions also hold the checkpoint store's file lock so another
    process sharing the plugin directory cannot interleave a load and save.
    The prepared-claims table is only reachable through them.
    """

    def __init__(
        self,
        allocatable: AllocatableDevices,
        cdi: EditWriter,
        checkpoints: CheckpointStore,
        decoder: ConfigDecoder | None = None,
        driver_name: str = DRIVER_NAME,
    ) -> None:
        self.allocatable = allocatable
        self.cdi = cdi
        self.checkpoints = checkpoints
        self.decoder = decoder or Decoder()
        self.driver_name = driver_name
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: DriverConfig) -> DeviceState:
        """
        Build the node's state: enumerate devices, write the common CDI
        spec and make sure a checkpoint exists.

        Raises:
            InvalidCPUSetError: If a CPU list is malformed or the lists overlap
            EditPersistError: If the common CDI spec cannot be written
            StorageError: If the checkpoint cannot be created
        """
        cpus = {
            "reserved": cpuset.parse(cfg.reserved_cpus),
            "shared": cpuset.parse(cfg.shared_cpus),
            "allocatable": cpuset.parse(cfg.allocatable_cpus),
        }
        allocatable = enumerate_all_possible_devices(cpus)

        cdi = CDIHandler(cfg.cdi_root, node_name=cfg.node_name)
        cdi.create_common_spec_file()

        checkpoints = CheckpointStore(FileStore(cfg.plugin_path))
        checkpoints.initialize()

        return cls(allocatable=allocatable, cdi=cdi, checkpoints=checkpoints)

    def prepare(self, claim: ResourceClaim) -> list[ClaimDevice]:
        """
        Prepare every device allocated to ``claim``.

        Returns:
            The prepared devices. A claim that is already prepared returns its
            stored devices without being re-validated.

        Raises:
            ValidationError: If the claim is unallocated, references an unknown
                device, or carries an unusable config
            StorageError: If the checkpoint cannot be loaded or saved
            EditPersistError: If the claim's CDI spec cannot be written
        """
        claim_uid = claim.uid
        with self._lock, self.checkpoints.lock():
            prepared_claims = self.checkpoints.load()

            if claim_uid in prepared_claims:
                logger.debug(f"Claim {claim_uid} already prepared")
                return get_devices(prepared_claims[claim_uid])

            prepared_devices = self._prepare_devices(claim)

            self.cdi.write_claim_edits(claim_uid, prepared_devices)

            prepared_claims[claim_uid] = prepared_devices
            self._save(prepared_claims)

            logger.info(f"Prepared {len(prepared_devices)} device(s) for claim {claim_uid}")
            return get_devices(prepared_devices)

    def unprepare(self, claim_uid: str) -> None:
        """
        Release the devices of a prepared claim. Unknown claims succeed and
        leave the checkpoint untouched.

        Raises:
            StorageError: If the checkpoint cannot be loaded or saved
            EditDeleteError: If a prepared claim's CDI spec cannot be removed
        """
        with self._lock, self.checkpoints.lock():
            prepared_claims = self.checkpoints.load()

            if claim_uid not in prepared_claims:
                logger.debug(f"Claim {claim_uid} not prepared, nothing to unprepare")
                self._remove_leftover_edits(claim_uid)
                return

            self._unprepare_devices(claim_uid, prepared_claims[claim_uid])

            # Keep the entry if the spec survives so a retry can finish cleanup.
            self.cdi.delete_claim_edits(claim_uid)

            del prepared_claims[claim_uid]
            self._save(prepared_claims)

            logger.info(f"Unprepared claim {claim_uid}")

    def prepared_claims(self) -> PreparedClaims:
        """Snapshot of the checkpointed table."""
        with self._lock:
            return self.checkpoints.load()

    def _save(self, prepared_claims: PreparedClaims) -> None:
        try:
            self.checkpoints.save(prepared_claims)
        except StorageError as e:
            raise CheckpointWriteError(f"unable to sync to checkpoint: {e}") from e

    def _prepare_devices(self, claim: ResourceClaim) -> PreparedDevices:
        allocation = claim.allocation
        if allocation is None:
            raise ClaimNotAllocatedError(claim.uid)

        for result in allocation.results:
            if self.allocatable.lookup(result.device) is None:
                raise DeviceNotAllocatableError(result.device)

        configs = get_opaque_device_configs(self.decoder, self.driver_name, allocation.config)

        # The default goes in front with the lowest precedence, so every
        # result is guaranteed a match below.
        configs.insert(0, OpaqueDeviceConfig(requests=[], config=default_cpu_config()))

        # Group results by the config that governs them, keyed by identity so
        # each config is normalized and applied exactly once.
        groups: dict[int, tuple[OpaqueDeviceConfig, list[DeviceRequestAllocationResult]]] = {}
        for result in allocation.results:
            selected = select_config(configs, result.request)
            groups.setdefault(id(selected), (selected, []))[1].append(result)

        per_device_edits: PerDeviceContainerEdits = {}
        for selected, results in groups.values():
            if not isinstance(selected.config, CpuConfig):
                raise UnsupportedConfigKindError(
                    f"runtime object is not a recognized configuration: "
                    f"{type(selected.config).__name__}"
                )

            for device, edits in apply_config(selected.config, results).items():
                existing = per_device_edits.get(device)
                if existing is not None and existing != edits:
                    raise InvalidConfigError(
                        f"device {device} is governed by conflicting configurations"
                    )
                per_device_edits[device] = edits

        prepared: PreparedDevices = []
        for result in allocation.results:
            edits = per_device_edits[result.device]
            prepared.append(
                PreparedDevice(
                    device=ClaimDevice(
                        request_names=[result.request],
                        pool_name=result.pool,
                        device_name=result.device,
                        cdi_device_ids=self.cdi.get_claim_devices(claim.uid, [result.device]),
                    ),
                    container_edits=ContainerEdits(
                        env=list(edits.env), device_nodes=list(edits.device_nodes)
                    ),
                )
            )
        return prepared

    def _remove_leftover_edits(self, claim_uid: str) -> None:
        """Best-effort removal of a spec left by a prepare whose checkpoint save failed."""
        try:
            self.cdi.delete_claim_edits(claim_uid)
        except EditError as e:
            logger.warning(f"Could not remove leftover CDI spec for claim {claim_uid}: {e}")

    def _unprepare_devices(self, claim_uid: str, devices: PreparedDevices) -> None:
        """Hook for undoing hardware configuration; CPUs need none today."""
        return None
