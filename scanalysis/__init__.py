"""Two-dataset single-cell RNA-seq analysis: QC, clustering, annotation and integration"""

__version__ = "0.1.0"
