"""Allow ``python -m nsticky``."""

from .cli import main

main()
