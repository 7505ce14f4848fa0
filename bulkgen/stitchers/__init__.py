"""Stitching backends that concatenate rendered segments into one artifact."""

from bulkgen.stitchers.base import StitchResult, Stitcher, StitchError

__all__ = ["StitchError", "StitchResult", "Stitcher"]
