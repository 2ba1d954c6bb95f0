"""Preprocessing module for loading and cleaning Drop-seq counts.

Stages
------
- load: Matrix Market triplet -> AnnData with sample/batch annotations
- qc: mitochondrial-fraction and gene-count cell filter, min-cells gene filter
- normalize: LogNormalize, dispersion-based variable genes, regression + scaling

Example Usage
-------------
>>> from dropseq_atlas.core.preprocessing import (
...     DataLoader, CellQC, Normalizer, PreprocessingConfig,
... )
>>> config = PreprocessingConfig()
>>> adata = DataLoader(config.loader).load_directory("data/").adata
>>> adata, qc_result = CellQC(config.qc).run(adata)
>>> norm_result = Normalizer(config.normalization).run(adata)
"""

from .config import (
    LoaderConfig,
    QCConfig,
    NormalizationConfig,
    PreprocessingConfig,
)

from .loader import (
    DataLoader,
    LoadResult,
    describe_dataset,
    matrix_memory_report,
)

from .qc import (
    CellQC,
    QCResult,
    REASON_COLUMNS,
)

from .normalization import (
    Normalizer,
    NormalizationResult,
    VariableGenesResult,
)

__all__ = [
    # Config
    "LoaderConfig",
    "QCConfig",
    "NormalizationConfig",
    "PreprocessingConfig",
    # Loading
    "DataLoader",
    "LoadResult",
    "describe_dataset",
    "matrix_memory_report",
    # QC
    "CellQC",
    "QCResult",
    "REASON_COLUMNS",
    # Normalization
    "Normalizer",
    "NormalizationResult",
    "VariableGenesResult",
]
