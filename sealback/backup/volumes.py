"""
Volume planning.

A logical source larger than the volume size threshold is cut into
consecutive byte ranges of exactly `threshold` bytes, the last range taking
the remainder. Indices are assigned here, before any concurrent work starts,
so volume numbering never depends on completion order.
"""

from typing import List

from sealback.models import Volume


class VolumeSplitter:
    """Deterministic, side-effect free volume planner."""

    @staticmethod
    def needs_split(source_size: int, threshold: int) -> bool:
        return source_size > threshold

    @staticmethod
    def plan(source_size: int, threshold: int) -> List[Volume]:
        """
        Partition `source_size` bytes into volumes.

        Args:
            source_size: Size of the logical (pre-compression) source in bytes
            threshold: Maximum number of source bytes per volume

        Returns:
            Ordered list of Volume descriptors (without paths)

        Raises:
            ValueError: If threshold is not positive or source_size is negative
        """
        if threshold <= 0:
            raise ValueError(f"Volume size threshold must be positive, got {threshold}")
        if source_size < 0:
            raise ValueError(f"Source size must not be negative, got {source_size}")

        if not VolumeSplitter.needs_split(source_size, threshold):
            return [Volume(index=1, total_volumes=1, source_offset=0, source_length=source_size)]

        total = -(-source_size // threshold)
        volumes = []
        for i in range(total):
            offset = i * threshold
            volumes.append(Volume(
                index=i + 1,
                total_volumes=total,
                source_offset=offset,
                source_length=min(threshold, source_size - offset),
            ))
        return volumes

