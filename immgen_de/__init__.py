"""
ImmGen Differential Expression Walkthrough
==========================================

Retrieves the ImmGen immune-cell expression compendium (GEO GSE15907),
annotates probes with gene symbols, and finds genes differentially
expressed between two cell populations with moderated linear models.

Modules:
--------
- download: Series retrieval from NCBI GEO
- annotation: Probe accession and gene symbol resolution
- preprocessing: Log transform, population labels, group subsetting
- qc: Sample-level quality control
- differential: Linear models, empirical Bayes, multiple testing
- visualization: Boxplots, heatmaps and volcano plots
- pipeline: End-to-end run from a YAML configuration
- utils: Helper functions and logging

Author: Alfred3005
License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Alfred3005"
__description__ = "ImmGen differential expression walkthrough"

from . import utils
from . import download
from . import annotation
from . import preprocessing
from . import qc
from . import differential
from . import visualization

__all__ = [
    "utils",
    "download",
    "annotation",
    "preprocessing",
    "qc",
    "differential",
    "visualization",
]
