"""Allow ``python -m smartburn``."""

from smartburn.main import main

main()
