"""Allow running as ``python -m prootbox``."""

from .main import main

main()
