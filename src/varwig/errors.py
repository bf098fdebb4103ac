"""Error taxonomy shared by the aggregation pipeline.

External tool failures live in :mod:`varwig.external` and :mod:`varwig.tools`;
filesystem faults are plain :class:`OSError`.
"""

from __future__ import annotations


class VarwigError(Exception):
    """Base class for pipeline errors."""


class NotFound(VarwigError):
    """No variant (or peak) exists at the requested coordinate."""


class MalformedData(VarwigError):
    """A record could not be parsed (e.g. a genotype call that is not diploid)."""


class ConsistencyError(VarwigError):
    """A valid request resolved to a degenerate input, such as zero samples."""
