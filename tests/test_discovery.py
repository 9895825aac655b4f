"""
Tests for CPU device discovery and the allocatable catalog.
"""

import pytest

from dracpu.cpuset import parse
from dracpu.discovery import (
    AllocatableDevices,
    Device,
    enumerate_all_possible_devices,
    enumerate_devices_for_cpu_class,
    generate_uuids,
)
from dracpu.errors import InvalidCPUSetError


@pytest.fixture
def catalog():
    return enumerate_all_possible_devices(
        {
            "reserved": parse("0"),
            "shared": parse("1-2"),
            "allocatable": parse("3-5"),
        }
    )


class TestEnumerate:
    """Tests for enumerate_all_possible_devices."""

    def test_device_names(self, catalog):
        """Test every CPU becomes a cpu-<id> device."""
        assert sorted(catalog) == ["cpu-0", "cpu-1", "cpu-2", "cpu-3", "cpu-4", "cpu-5"]

    def test_exactly_one_class_flag(self, catalog):
        """Test each device has exactly one classification."""
        for device in catalog.values():
            flags = [device.reserved, device.shared, device.allocatable]
            assert flags.count(True) == 1
            attrs = [device.attributes[k] for k in ("reserved", "shared", "allocatable")]
            assert attrs.count(True) == 1

    def test_classification(self, catalog):
        assert catalog["cpu-0"].reserved
        assert catalog["cpu-1"].shared
        assert catalog["cpu-4"].allocatable

    def test_attributes(self, catalog):
        """Test the index, uuid and zone attributes."""
        device = catalog["cpu-3"]
        assert device.attributes["index"] == 3
        assert device.attributes["zone"] == 0
        assert device.attributes["uuid"].startswith("cpu-")

    def test_uuids_deterministic(self):
        """Test enumeration is deterministic for the same partition."""
        cpus = {"allocatable": parse("0-3")}
        first = enumerate_all_possible_devices(cpus)
        second = enumerate_all_possible_devices(cpus)
        for name in first:
            assert first[name].attributes["uuid"] == second[name].attributes["uuid"]

    def test_uuids_unique(self, catalog):
        uuids = [d.attributes["uuid"] for d in catalog.values()]
        assert len(set(uuids)) == len(uuids)

    def test_overlapping_classes_rejected(self):
        """Test a CPU listed in two classes is refused."""
        with pytest.raises(InvalidCPUSetError) as exc_info:
            enumerate_all_possible_devices({"reserved": parse("0-1"), "allocatable": parse("1-2")})
        assert "CPU 1" in str(exc_info.value)

    def test_unknown_class_rejected(self):
        with pytest.raises(ValueError):
            enumerate_devices_for_cpu_class("isolated", parse("0"))

    def test_empty_partition(self):
        assert len(enumerate_all_possible_devices({})) == 0


class TestGenerateUUIDs:
    def test_same_seed_same_uuids(self):
        assert generate_uuids("allocatable", 3) == generate_uuids("allocatable", 3)

    def test_different_seed_different_uuids(self):
        assert generate_uuids("allocatable", 1) != generate_uuids("reserved", 1)

    def test_count(self):
        assert len(generate_uuids("shared", 5)) == 5
        assert generate_uuids("shared", 0) == []


class TestAllocatableDevices:
    """Tests for the read-only catalog."""

    def test_lookup_found(self, catalog):
        device = catalog.lookup("cpu-3")
        assert device is not None
        assert device.name == "cpu-3"

    def test_lookup_not_found(self, catalog):
        """Test an unknown id is a normal None result, not an exception."""
        assert catalog.lookup("cpu-99") is None

    def test_catalog_is_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog["cpu-9"] = catalog["cpu-0"]

    def test_source_mapping_not_shared(self):
        """Test mutating the input dict does not change the catalog."""
        source = {"cpu-0": Device(name="cpu-0", cpu_class="allocatable")}
        catalog = AllocatableDevices(source)
        source.clear()
        assert "cpu-0" in catalog

    def test_device_attributes_immutable(self, catalog):
        with pytest.raises(TypeError):
            catalog["cpu-0"].attributes["zone"] = 1

    def test_device_rejects_unknown_class(self):
        with pytest.raises(ValueError):
            Device(name="cpu-0", cpu_class="bogus")
