"""Allow ``python -m warmclaw``."""

from warmclaw.main import main

main()
