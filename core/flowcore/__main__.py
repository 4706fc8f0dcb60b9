"""Allow running as: python -m flowcore"""

from flowcore.cli import main

main()
