"""Base interface for stitching backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


class StitchError(Exception):
    """Raised by a backend when concatenation fails."""


@dataclass
class StitchResult:
    """Reference to a stitched artifact."""

    artifact_ref: str
    segment_count: int


class Stitcher(ABC):
    """Concatenates segments, in the order given, into one playable artifact."""

    @abstractmethod
    async def stitch(self, segments: list[str], target_key: str) -> StitchResult:
        """Stitch ``segments`` (output refs, already in ordinal order).

        Args:
            segments: Output references of the inputs, first segment first
            target_key: Stable identifier of the target (batch or row) used to
                name intermediate and final assets

        Raises:
            StitchError: If the backend could not produce the artifact
        """
        ...

    async def close(self) -> None:
        return None
