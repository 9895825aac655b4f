"""
Linux CPU list parsing.

Handles the list format used by cpuset cgroups and the kubelet, e.g.
``0-3,8,10-11``. An empty string is the empty set.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from dracpu.errors import InvalidCPUSetError


class CPUSet:
    """Immutable, sorted set of CPU ids."""

    __slots__ = ("_cpus",)

    def __init__(self, cpus: Iterable[int] = ()) -> None:
        self._cpus = frozenset(cpus)

    def size(self) -> int:
        return len(self._cpus)

    def list(self) -> list[int]:
        """CPU ids in ascending order."""
        return sorted(self._cpus)

    def __iter__(self) -> Iterator[int]:
        return iter(self.list())

    def __len__(self) -> int:
        return len(self._cpus)

    def __contains__(self, cpu: object) -> bool:
        return cpu in self._cpus

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CPUSet):
            return NotImplemented
        return self._cpus == other._cpus

    def __hash__(self) -> int:
        return hash(self._cpus)

    def __repr__(self) -> str:
        return f"CPUSet({str(self)!r})"

    def __str__(self) -> str:
        """Format back to canonical list syntax, collapsing runs into ranges."""
        cpus = self.list()
        if not cpus:
            return ""

        parts: list[str] = []
        start = prev = cpus[0]
        for cpu in cpus[1:]:
            if cpu == prev + 1:
                prev = cpu
                continue
            parts.append(_format_range(start, prev))
            start = prev = cpu
        parts.append(_format_range(start, prev))
        return ",".join(parts)


def _format_range(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"


def _parse_cpu_id(token: str, text: str) -> int:
    token = token.strip()
    if not (token.isascii() and token.isdigit()):
        raise InvalidCPUSetError(f"invalid CPU id {token!r} in CPU list {text!r}")
    return int(token)


def parse(text: str | None) -> CPUSet:
    """
    Parse a CPU list string.

    Args:
        text: List such as ``"0-3,8"``; ``None`` or blank yields the empty set

    Returns:
        The parsed CPUSet

    Raises:
        InvalidCPUSetError: On malformed elements or reversed ranges
    """
    if text is None or not text.strip():
        return CPUSet()

    cpus: set[int] = set()
    for element in text.split(","):
        if not element.strip():
            raise InvalidCPUSetError(f"empty element in CPU list {text!r}")

        if "-" in element:
            bounds = element.split("-")
            if len(bounds) != 2:
                raise InvalidCPUSetError(f"invalid range {element.strip()!r} in CPU list {text!r}")
            start = _parse_cpu_id(bounds[0], text)
            end = _parse_cpu_id(bounds[1], text)
            if start > end:
                raise InvalidCPUSetError(
                    f"invalid range {element.strip()!r} in CPU list {text!r}: start > end"
                )
            cpus.update(range(start, end + 1))
        else:
            cpus.add(_parse_cpu_id(element, text))

    return CPUSet(cpus)
