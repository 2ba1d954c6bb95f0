"""Allow ``python -m dropseq_atlas``."""

from .cli.main import main

main()
