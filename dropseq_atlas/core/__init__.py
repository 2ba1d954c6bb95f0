"""Core computational modules for Drop-seq Atlas.

This package contains the analysis engines:
- preprocessing: Matrix loading, cell/gene QC, normalization and scaling
- clustering: PCA/tSNE, SNN graph clustering, marker detection, cluster merging
"""
