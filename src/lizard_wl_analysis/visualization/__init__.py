"""
QC review plots.
"""

from .replicates import plot_replicate_groups

__all__ = [
    "plot_replicate_groups",
]
