"""Command-line interface for Drop-seq Atlas.

Example Usage
-------------
    # From command line:
    dropseq-atlas --help
    dropseq-atlas preprocess --input data/ --out out/
    dropseq-atlas cluster --input out/preprocessed.h5ad --out out/
    dropseq-atlas run --config workflow.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
