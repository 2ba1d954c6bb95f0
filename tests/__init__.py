"""Test suite for dropseq-atlas.

Test organization:
- fixtures/: Synthetic count matrices and AnnData builders
- unit/: Unit tests for individual modules, plus an end-to-end workflow run
  in unit/test_pipeline.py

Run tests with:
    pytest tests/
    pytest tests/unit/test_de.py -v
"""
