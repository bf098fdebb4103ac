"""varwig: genotype-stratified signal track aggregation for variant/peak browsing.

Public API is intentionally small; most users should use the CLI:

    varwig values --peaks peaks.tsv --peak-id 42 --config varwig.yaml

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
