"""Configuration classes for preprocessing stages.

Defaults reproduce the thresholds used for the Drop-seq retina analysis;
every value can be overridden from YAML.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class LoaderConfig:
    """Configuration for loading the Matrix Market triplet.

    Attributes
    ----------
    matrix_names : List[str]
        Candidate file names for the sparse count matrix (genes x cells)
    genes_names : List[str]
        Candidate file names for the gene list
    barcodes_names : List[str]
        Candidate file names for the cell barcode list
    gene_column : int
        Column of the genes file holding the gene symbol (0-based).
        Falls back to column 0 when the file has a single column.
    make_unique : bool
        Make duplicated gene names unique by suffixing
    sample_delimiter : str
        Delimiter separating the sample prefix from the barcode
    default_sample : str
        Sample assigned to barcodes without a prefix
    batch_map : Dict[str, str]
        Optional sample -> batch mapping; unmapped samples are their own batch
    """

    matrix_names: List[str] = field(
        default_factory=lambda: ["matrix.mtx", "matrix.mtx.gz"]
    )
    genes_names: List[str] = field(
        default_factory=lambda: [
            "genes.tsv",
            "genes.tsv.gz",
            "features.tsv",
            "features.tsv.gz",
        ]
    )
    barcodes_names: List[str] = field(
        default_factory=lambda: ["barcodes.tsv", "barcodes.tsv.gz"]
    )
    gene_column: int = 1
    make_unique: bool = True
    sample_delimiter: str = "_"
    default_sample: str = "sample_1"
    batch_map: Dict[str, str] = field(default_factory=dict)


@dataclass
class QCConfig:
    """Configuration for cell and gene quality control.

    Attributes
    ----------
    mito_prefix : str
        Gene-name prefix of mitochondrial genes (matched case-insensitively)
    max_mito_fraction : float
        Cells must have a mitochondrial UMI fraction strictly below this
    min_genes : int
        Cells must detect strictly more genes than this
    max_genes : int
        Cells must detect strictly fewer genes than this
    min_cells_per_gene : int
        Genes detected in fewer retained cells are dropped
    """

    mito_prefix: str = "mt-"
    max_mito_fraction: float = 0.05
    min_genes: int = 500
    max_genes: int = 2000
    min_cells_per_gene: int = 3


@dataclass
class NormalizationConfig:
    """Configuration for normalization, variable genes and scaling.

    Attributes
    ----------
    scale_factor : float
        Library size every cell is normalized to before log1p
    hvg_flavor : str
        Dispersion flavor passed to scanpy (seurat or cell_ranger)
    hvg_min_mean : float
        Lower mean-expression cutoff for variable genes
    hvg_max_mean : float
        Upper mean-expression cutoff for variable genes
    hvg_min_disp : float
        Normalized dispersion cutoff for variable genes
    n_top_genes : int, optional
        If set, take this many top-dispersion genes instead of cutoffs
    regress_vars : List[str]
        obs columns regressed out of the scaled matrix
    scale_clip : float
        Clip value for z-scored expression
    """

    scale_factor: float = 1e4
    hvg_flavor: str = "seurat"
    hvg_min_mean: float = 0.0125
    hvg_max_mean: float = 3.0
    hvg_min_disp: float = 0.5
    n_top_genes: Optional[int] = None
    regress_vars: List[str] = field(
        default_factory=lambda: ["n_counts", "frac_mito"]
    )
    scale_clip: float = 10.0


@dataclass
class PreprocessingConfig:
    """Master configuration for preprocessing.

    Attributes
    ----------
    loader : LoaderConfig
        Input loading configuration
    qc : QCConfig
        Quality-control configuration
    normalization : NormalizationConfig
        Normalization and scaling configuration
    """

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            loader=LoaderConfig(**data.get("loader", {})),
            qc=QCConfig(**data.get("qc", {})),
            normalization=NormalizationConfig(**data.get("normalization", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "loader": {
                "gene_column": self.loader.gene_column,
                "make_unique": self.loader.make_unique,
                "sample_delimiter": self.loader.sample_delimiter,
                "default_sample": self.loader.default_sample,
                "batch_map": dict(self.loader.batch_map),
            },
            "qc": {
                "mito_prefix": self.qc.mito_prefix,
                "max_mito_fraction": self.qc.max_mito_fraction,
                "min_genes": self.qc.min_genes,
                "max_genes": self.qc.max_genes,
                "min_cells_per_gene": self.qc.min_cells_per_gene,
            },
            "normalization": {
                "scale_factor": self.normalization.scale_factor,
                "hvg_flavor": self.normalization.hvg_flavor,
                "hvg_min_mean": self.normalization.hvg_min_mean,
                "hvg_max_mean": self.normalization.hvg_max_mean,
                "hvg_min_disp": self.normalization.hvg_min_disp,
                "n_top_genes": self.normalization.n_top_genes,
                "regress_vars": list(self.normalization.regress_vars),
                "scale_clip": self.normalization.scale_clip,
            },
        }
