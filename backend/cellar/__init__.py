"""
Cellar production ledger.

Batch volume, composition and lineage tracking for a cidery/winery.
"""

__version__ = "0.1.0"
