"""Allow ``python -m taskloop``."""

from taskloop.cli import main

if __name__ == "__main__":
    main()
