"""Allow ``python -m bridgerelay``."""

from bridgerelay.main import main

main()
