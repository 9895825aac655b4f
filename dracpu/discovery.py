"""
CPU device discovery.

Every CPU handed to the driver becomes one device named ``cpu-<id>``. The
device carries its classification (reserved, shared or allocatable) both as a
field and as boolean attributes, so the published resource slice can be
filtered with CEL selectors on any of them.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from dracpu.cpuset import CPUSet
from dracpu.defaults import CPU_CLASSES
from dracpu.errors import InvalidCPUSetError

logger = logging.getLogger(__name__)

AttributeValue = int | str | bool

_INT64_MASK = (1 << 64) - 1


@dataclass(frozen=True)
class Device:
    """A single CPU as published to the scheduler."""

    name: str
    cpu_class: str
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.cpu_class not in CPU_CLASSES:
            raise ValueError(f"unknown CPU class: {self.cpu_class}")
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def reserved(self) -> bool:
        return self.cpu_class == "reserved"

    @property
    def shared(self) -> bool:
        return self.cpu_class == "shared"

    @property
    def allocatable(self) -> bool:
        return self.cpu_class == "allocatable"


class AllocatableDevices(Mapping[str, Device]):
    """
    Read-only catalog of every device the driver knows about.

    Built once at startup and never mutated afterwards, so concurrent reads
    need no locking.
    """

    def __init__(self, devices: Mapping[str, Device] | None = None) -> None:
        self._devices: Mapping[str, Device] = MappingProxyType(dict(devices or {}))

    def lookup(self, device_id: str) -> Device | None:
        """Return the device, or None when the id is not in the catalog."""
        return self._devices.get(device_id)

    def __getitem__(self, device_id: str) -> Device:
        return self._devices[device_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __repr__(self) -> str:
        return f"AllocatableDevices({sorted(self._devices)!r})"


def _hash(seed: str) -> int:
    """31-multiplier string hash with signed 64-bit wraparound."""
    h = 0
    for char in seed:
        h = (31 * h + ord(char)) & _INT64_MASK
    if h >= 1 << 63:
        h -= 1 << 64
    return h


def generate_uuids(seed: str, count: int) -> list[str]:
    """Deterministic device UUIDs: the same seed always yields the same list."""
    rng = random.Random(_hash(seed))
    return [f"cpu-{uuid.UUID(bytes=rng.randbytes(16))}" for _ in range(count)]


def enumerate_devices_for_cpu_class(cpu_class: str, cpus: CPUSet) -> dict[str, Device]:
    if cpu_class not in CPU_CLASSES:
        raise ValueError(f"unknown CPU class: {cpu_class}")

    uuids = generate_uuids(cpu_class, cpus.size())
    devices: dict[str, Device] = {}
    for i, cpu_id in enumerate(cpus.list()):
        attributes: dict[str, AttributeValue] = {
            "index": cpu_id,
            "uuid": uuids[i],
            "zone": 0,
        }
        for flag in CPU_CLASSES:
            attributes[flag] = flag == cpu_class

        name = f"cpu-{cpu_id}"
        devices[name] = Device(name=name, cpu_class=cpu_class, attributes=attributes)
    return devices


def enumerate_all_possible_devices(cpus: Mapping[str, CPUSet]) -> AllocatableDevices:
    """
    Build the device catalog from the CPU partition.

    Args:
        cpus: CPU class name ("reserved", "shared", "allocatable") to CPU set

    Returns:
        The immutable catalog

    Raises:
        InvalidCPUSetError: If a CPU is listed in more than one class
        ValueError: If a class name is unknown
    """
    seen: dict[int, str] = {}
    for cpu_class, cpu_set in cpus.items():
        for cpu_id in cpu_set:
            if cpu_id in seen:
                raise InvalidCPUSetError(
                    f"CPU {cpu_id} is listed as both {seen[cpu_id]} and {cpu_class}"
                )
            seen[cpu_id] = cpu_class

    all_devices: dict[str, Device] = {}
    for cpu_class, cpu_set in cpus.items():
        all_devices.update(enumerate_devices_for_cpu_class(cpu_class, cpu_set))

    logger.debug(f"Enumerated {len(all_devices)} CPU devices")
    return AllocatableDevices(all_devices)
