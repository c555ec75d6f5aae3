"""Allow ``python -m acmerecon``."""

from acmerecon.cli.main import main

main()
