"""
Opaque configuration API for CPU devices.

Claims and device classes attach a ``CpuConfig`` as opaque parameters:

    apiVersion: resource.cpu.com/v1alpha1
    kind: CpuConfig
    sharing:
      strategy: TimeSlicing
      timeSlicingConfig:
        interval: Long

A config without ``sharing`` hands out the core exclusively. When sharing is
set, exactly one of the strategy blocks applies, selected by ``strategy``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from dracpu.defaults import CONFIG_API_VERSION, CONFIG_KIND
from dracpu.errors import (
    InvalidConfigError,
    SharingStrategyMismatchError,
    UnsupportedConfigKindError,
)


class SharingStrategy(str, Enum):
    TIME_SLICING = "TimeSlicing"
    SPACE_PARTITIONING = "SpacePartitioning"


class TimeSliceInterval(str, Enum):
    DEFAULT = "Default"
    SHORT = "Short"
    MEDIUM = "Medium"
    LONG = "Long"


_STRATEGIES = {s.value for s in SharingStrategy}
_INTERVALS = {i.value for i in TimeSliceInterval}


@dataclass
class TimeSlicingConfig:
    interval: str | None = TimeSliceInterval.DEFAULT.value

    def to_dict(self) -> dict[str, Any]:
        return {"interval": self.interval}


@dataclass
class SpacePartitioningConfig:
    partition_count: int | None = 1

    def to_dict(self) -> dict[str, Any]:
        return {"partitionCount": self.partition_count}


@dataclass
class CpuSharing:
    strategy: str
    time_slicing_config: TimeSlicingConfig | None = None
    space_partitioning_config: SpacePartitioningConfig | None = None

    def is_time_slicing(self) -> bool:
        return self.strategy == SharingStrategy.TIME_SLICING.value

    def is_space_partitioning(self) -> bool:
        return self.strategy == SharingStrategy.SPACE_PARTITIONING.value

    def get_time_slicing_config(self) -> TimeSlicingConfig:
        """
        Raises:
            SharingStrategyMismatchError: If the strategy is not TimeSlicing
        """
        if not self.is_time_slicing():
            raise SharingStrategyMismatchError(
                f"strategy is not set to {SharingStrategy.TIME_SLICING.value}: {self.strategy}"
            )
        if self.time_slicing_config is None:
            raise InvalidConfigError("no time slicing config set")
        return self.time_slicing_config

    def get_space_partitioning_config(self) -> SpacePartitioningConfig:
        """
        Raises:
            SharingStrategyMismatchError: If the strategy is not SpacePartitioning
        """
        if not self.is_space_partitioning():
            raise SharingStrategyMismatchError(
                f"strategy is not set to {SharingStrategy.SPACE_PARTITIONING.value}: {self.strategy}"
            )
        if self.space_partitioning_config is None:
            raise InvalidConfigError("no space partitioning config set")
        return self.space_partitioning_config

    def normalize(self) -> None:
        if self.is_time_slicing():
            if self.time_slicing_config is None:
                self.time_slicing_config = TimeSlicingConfig()
            if self.time_slicing_config.interval is None:
                self.time_slicing_config.interval = TimeSliceInterval.DEFAULT.value
        elif self.is_space_partitioning():
            if self.space_partitioning_config is None:
                self.space_partitioning_config = SpacePartitioningConfig()
            if self.space_partitioning_config.partition_count is None:
                self.space_partitioning_config.partition_count = 1

    def validate(self) -> None:
        if self.strategy not in _STRATEGIES:
            raise InvalidConfigError(f"unknown sharing strategy: {self.strategy}")

        if self.is_time_slicing():
            if self.space_partitioning_config is not None:
                raise InvalidConfigError(
                    "spacePartitioningConfig is not allowed with the TimeSlicing strategy"
                )
            config = self.get_time_slicing_config()
            if config.interval not in _INTERVALS:
                raise InvalidConfigError(f"unknown time slice interval: {config.interval}")
        else:
            if self.time_slicing_config is not None:
                raise InvalidConfigError(
                    "timeSlicingConfig is not allowed with the SpacePartitioning strategy"
                )
            config = self.get_space_partitioning_config()
            count = config.partition_count
            if isinstance(count, bool) or not isinstance(count, int) or count < 1:
                raise InvalidConfigError(f"invalid partition count: {count}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"strategy": self.strategy}
        if self.time_slicing_config is not None:
            data["timeSlicingConfig"] = self.time_slicing_config.to_dict()
        if self.space_partitioning_config is not None:
            data["spacePartitioningConfig"] = self.space_partitioning_config.to_dict()
        return data


@dataclass
class CpuConfig:
    """Configuration for one or more allocated CPUs."""

    sharing: CpuSharing | None = None
    api_version: str = field(default=CONFIG_API_VERSION, repr=False)
    kind: str = field(default=CONFIG_KIND, repr=False)

    def normalize(self) -> None:
        """Fill in implied defaults for the selected sharing strategy."""
        if self.sharing is not None:
            self.sharing.normalize()

    def validate(self) -> None:
        """
        Raises:
            InvalidConfigError: Naming the first violated constraint
        """
        if self.sharing is not None:
            self.sharing.validate()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"apiVersion": self.api_version, "kind": self.kind}
        if self.sharing is not None:
            data["sharing"] = self.sharing.to_dict()
        return data


def default_cpu_config() -> CpuConfig:
    """The lowest-precedence config: an exclusive, unshared core."""
    return CpuConfig()


# ============================================================================
# DECODING
# ============================================================================


def _require_mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise UnsupportedConfigKindError(
            f"error decoding {path}: expected an object, got {type(value).__name__}"
        )
    return value


def _reject_unknown_fields(data: Mapping[str, Any], allowed: set[str], path: str) -> None:
    unknown = sorted(str(k) for k in data if k not in allowed)
    if unknown:
        raise UnsupportedConfigKindError(
            f"strict decoding error: unknown field(s) {', '.join(unknown)} in {path}"
        )


class Decoder:
    """Decodes raw opaque parameters into a ``CpuConfig``."""

    def __init__(self, api_version: str = CONFIG_API_VERSION, kind: str = CONFIG_KIND) -> None:
        self.api_version = api_version
        self.kind = kind

    def decode(self, raw: Any) -> CpuConfig:
        """
        Decode opaque parameters.

        Args:
            raw: A mapping, or YAML/JSON text (str or bytes)

        Returns:
            The decoded, not yet normalized, config

        Raises:
            UnsupportedConfigKindError: If the payload is not a CpuConfig of
                this API version or carries unknown fields
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            try:
                raw = yaml.safe_load(raw)
            except yaml.YAMLError as e:
                raise UnsupportedConfigKindError(f"error decoding config parameters: {e}") from e

        data = _require_mapping(raw, "config")
        api_version = data.get("apiVersion")
        kind = data.get("kind")
        if api_version != self.api_version or kind != self.kind:
            raise UnsupportedConfigKindError(
                f"unsupported config kind {api_version}/{kind}, "
                f"expected {self.api_version}/{self.kind}"
            )
        _reject_unknown_fields(data, {"apiVersion", "kind", "sharing"}, "config")

        sharing = None
        if data.get("sharing") is not None:
            sharing = self._decode_sharing(_require_mapping(data["sharing"], "sharing"))

        return CpuConfig(sharing=sharing, api_version=api_version, kind=kind)

    def _decode_sharing(self, data: Mapping[str, Any]) -> CpuSharing:
        _reject_unknown_fields(
            data, {"strategy", "timeSlicingConfig", "spacePartitioningConfig"}, "sharing"
        )
        strategy = data.get("strategy")
        if not isinstance(strategy, str):
            raise UnsupportedConfigKindError("error decoding sharing.strategy: expected a string")

        time_slicing = None
        if data.get("timeSlicingConfig") is not None:
            ts = _require_mapping(data["timeSlicingConfig"], "sharing.timeSlicingConfig")
            _reject_unknown_fields(ts, {"interval"}, "sharing.timeSlicingConfig")
            interval = ts.get("interval")
            if interval is not None and not isinstance(interval, str):
                raise UnsupportedConfigKindError(
                    "error decoding sharing.timeSlicingConfig.interval: expected a string"
                )
            time_slicing = TimeSlicingConfig(interval=interval)

        space_partitioning = None
        if data.get("spacePartitioningConfig") is not None:
            sp = _require_mapping(data["spacePartitioningConfig"], "sharing.spacePartitioningConfig")
            _reject_unknown_fields(sp, {"partitionCount"}, "sharing.spacePartitioningConfig")
            count = sp.get("partitionCount")
            if count is not None and (isinstance(count, bool) or not isinstance(count, int)):
                raise UnsupportedConfigKindError(
                    "error decoding sharing.spacePartitioningConfig.partitionCount: "
                    "expected an integer"
                )
            space_partitioning = SpacePartitioningConfig(partition_count=count)

        return CpuSharing(
            strategy=strategy,
            time_slicing_config=time_slicing,
            space_partitioning_config=space_partitioning,
        )
