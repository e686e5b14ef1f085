"""Exception types raised while decoding and laying out page data."""

from __future__ import annotations


class MosaicError(Exception):
    """Base class for every error raised by :mod:`memstat_mosaic`."""


class ProtocolError(MosaicError, ValueError):
    """The byte stream does not follow the page-info wire format."""


class MalformedRecordError(ProtocolError):
    """A frame's payload cannot be split into whole region records."""


class RegionOrderError(MosaicError, ValueError):
    """Regions are empty, unsorted, overlapping, or carry mismatched page data."""
