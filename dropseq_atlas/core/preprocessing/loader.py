"""Data loader for Drop-seq count matrices.

Reads the Matrix Market triplet (matrix, genes, barcodes) into an
AnnData object with cells as observations, and annotates every cell
with its sample of origin and batch.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from .config import LoaderConfig


PathLike = Union[str, Path]


@dataclass
class LoadResult:
    """Result from loading a dataset.

    Attributes
    ----------
    adata : AnnData
        Cells x genes AnnData with raw counts in X
    n_cells : int
        Number of cells (barcodes)
    n_genes : int
        Number of genes
    samples : Dict[str, int]
        Cells per sample of origin
    memory : Dict[str, float]
        Sparse vs dense memory report for the count matrix
    issues : List[str]
        Non-fatal problems found while loading
    """

    adata: Any = None
    n_cells: int = 0
    n_genes: int = 0
    samples: Dict[str, int] = field(default_factory=dict)
    memory: Dict[str, float] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "OK" if not self.issues else "CHECK"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
            "n_samples": len(self.samples),
            "samples": dict(self.samples),
            "sparse_mb": round(self.memory.get("sparse_mb", 0.0), 2),
            "dense_mb": round(self.memory.get("dense_mb", 0.0), 2),
            "status": self.status,
            "issues": ";".join(self.issues) if self.issues else "",
        }


def matrix_memory_report(matrix: Any) -> Dict[str, float]:
    """Compare the in-memory size of a matrix with its dense equivalent.

    Parameters
    ----------
    matrix : sparse matrix or np.ndarray
        Expression matrix

    Returns
    -------
    Dict[str, float]
        sparse_mb, dense_mb, ratio (dense / sparse) and density
    """
    n_rows, n_cols = matrix.shape
    itemsize = np.dtype(matrix.dtype).itemsize
    dense_bytes = float(n_rows) * float(n_cols) * itemsize

    if sparse.issparse(matrix):
        stored = matrix.data.nbytes
        for attr in ("indices", "indptr", "row", "col"):
            part = getattr(matrix, attr, None)
            if part is not None:
                stored += part.nbytes
        nnz = matrix.nnz
    else:
        stored = np.asarray(matrix).nbytes
        nnz = int(np.count_nonzero(matrix))

    total = float(n_rows) * float(n_cols)
    return {
        "sparse_mb": stored / 1024**2,
        "dense_mb": dense_bytes / 1024**2,
        "ratio": dense_bytes / stored if stored else float("inf"),
        "density": nnz / total if total else 0.0,
    }


def describe_dataset(adata: Any, cluster_key: str = "cluster") -> Dict[str, Any]:
    """Summarize the shape of an analysis object.

    Parameters
    ----------
    adata : AnnData
        Analysis object at any stage
    cluster_key : str
        Cluster column reported when present

    Returns
    -------
    Dict[str, Any]
        n_genes, n_cells, per-sample cell counts and cluster count
    """
    summary: Dict[str, Any] = {
        "n_genes": int(adata.n_vars),
        "n_cells": int(adata.n_obs),
    }
    if "sample" in adata.obs:
        counts = adata.obs["sample"].astype(str).value_counts().sort_index()
        summary["samples"] = {k: int(v) for k, v in counts.items()}
    if cluster_key in adata.obs:
        summary["n_clusters"] = int(adata.obs[cluster_key].nunique())
    if "highly_variable" in adata.var:
        summary["n_variable_genes"] = int(adata.var["highly_variable"].sum())
    return summary


class DataLoader:
    """Loader for Matrix Market count triplets.

    Parameters
    ----------
    config : LoaderConfig, optional
        Loader configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from dropseq_atlas.core.preprocessing import DataLoader, LoaderConfig
    >>> loader = DataLoader(LoaderConfig(sample_delimiter="_"))
    >>> result = loader.load_directory("data/retina")
    >>> result.adata
    AnnData object with n_obs x n_vars = 44994 x 24904
    """

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LoaderConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _find_file(self, directory: Path, candidates: Sequence[str], kind: str) -> Path:
        for name in candidates:
            path = directory / name
            if path.exists():
                return path
        raise FileNotFoundError(
            f"No {kind} file found in {directory} (tried: {', '.join(candidates)})"
        )

    def read_names(self, path: PathLike, column: int = 0) -> List[str]:
        """Read a newline-delimited name file.

        Tab-separated files are supported; ``column`` selects the field and
        falls back to the first one when the file is single-column.
        """
        try:
            df = pd.read_csv(path, sep="\t", header=None, dtype=str)
        except pd.errors.EmptyDataError:
            raise ValueError(f"Name file is empty: {path}")
        if df.empty:
            raise ValueError(f"Name file is empty: {path}")
        col = column if column < df.shape[1] else 0
        return df.iloc[:, col].astype(str).str.strip().tolist()

    def read_genes(self, path: PathLike) -> List[str]:
        """Read gene names from a genes/features file."""
        return self.read_names(path, column=self.config.gene_column)

    def read_barcodes(self, path: PathLike) -> List[str]:
        """Read cell barcodes from a barcodes file."""
        return self.read_names(path, column=0)

    def parse_sample(self, barcode: str) -> str:
        """Return the sample-of-origin prefix of a barcode."""
        delimiter = self.config.sample_delimiter
        if delimiter and delimiter in barcode:
            return barcode.split(delimiter, 1)[0]
        return self.config.default_sample

    def annotate_samples(self, adata: Any) -> Dict[str, int]:
        """Add ``sample`` and ``batch`` columns to ``adata.obs``.

        Returns
        -------
        Dict[str, int]
            Cells per sample
        """
        samples = [self.parse_sample(bc) for bc in adata.obs_names]
        batch_map = self.config.batch_map
        batches = [batch_map.get(s, s) for s in samples]
        adata.obs["sample"] = pd.Categorical(samples)
        adata.obs["batch"] = pd.Categorical(batches)
        counts = adata.obs["sample"].value_counts().sort_index()
        return {str(k): int(v) for k, v in counts.items()}

    def load_dataset(
        self,
        matrix_path: PathLike,
        genes_path: PathLike,
        barcodes_path: PathLike,
    ) -> LoadResult:
        """Load a count matrix with its gene and barcode lists.

        Parameters
        ----------
        matrix_path : PathLike
            Matrix Market file, genes as rows and cells as columns
        genes_path : PathLike
            Gene names, one per line
        barcodes_path : PathLike
            Cell barcodes, one per line

        Returns
        -------
        LoadResult
            Loaded AnnData (cells x genes, CSR counts) plus summary

        Raises
        ------
        FileNotFoundError
            If any input file is missing
        ValueError
            If the matrix dimensions disagree with the name files
        """
        import scanpy as sc

        for path in (matrix_path, genes_path, barcodes_path):
            if not Path(path).exists():
                raise FileNotFoundError(f"Input file not found: {path}")

        self.logger.info("Reading count matrix: %s", matrix_path)
        genes = self.read_genes(genes_path)
        barcodes = self.read_barcodes(barcodes_path)

        raw = sc.read_mtx(str(matrix_path), dtype="float32")
        n_rows, n_cols = raw.shape
        if n_rows != len(genes):
            raise ValueError(
                f"Matrix {matrix_path} has {n_rows} rows but {genes_path} "
                f"lists {len(genes)} genes"
            )
        if n_cols != len(barcodes):
            raise ValueError(
                f"Matrix {matrix_path} has {n_cols} columns but {barcodes_path} "
                f"lists {len(barcodes)} barcodes"
            )

        adata = raw.T
        adata.X = sparse.csr_matrix(adata.X)
        adata.obs_names = pd.Index(barcodes)
        adata.var_names = pd.Index(genes)

        result = LoadResult()

        if adata.var_names.has_duplicates:
            n_dups = int(adata.var_names.duplicated().sum())
            result.issues.append(f"duplicate_genes:{n_dups}")
            if self.config.make_unique:
                adata.var_names_make_unique()
                self.logger.info("Made %d duplicated gene names unique", n_dups)

        if adata.obs_names.has_duplicates:
            n_dups = int(adata.obs_names.duplicated().sum())
            result.issues.append(f"duplicate_barcodes:{n_dups}")
            adata.obs_names_make_unique()
            self.logger.warning("Found %d duplicated barcodes", n_dups)

        result.samples = self.annotate_samples(adata)
        result.memory = matrix_memory_report(adata.X)
        result.adata = adata
        result.n_cells = adata.n_obs
        result.n_genes = adata.n_vars

        self.logger.info(
            "Loaded raw matrix: %d genes x %d cells across %d samples",
            result.n_genes,
            result.n_cells,
            len(result.samples),
        )
        self.logger.info(
            "Sparse matrix uses %.1f MB (dense equivalent %.1f MB, %.0fx larger)",
            result.memory["sparse_mb"],
            result.memory["dense_mb"],
            result.memory["ratio"],
        )
        return result

    def load_directory(self, directory: PathLike) -> LoadResult:
        """Load the triplet found inside ``directory``.

        File names are resolved from the configured candidate lists.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Input directory not found: {directory}")

        matrix_path = self._find_file(directory, self.config.matrix_names, "matrix")
        genes_path = self._find_file(directory, self.config.genes_names, "genes")
        barcodes_path = self._find_file(
            directory, self.config.barcodes_names, "barcodes"
        )
        return self.load_dataset(matrix_path, genes_path, barcodes_path)
