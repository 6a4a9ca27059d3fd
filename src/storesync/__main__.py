"""Allow running storesync as ``python -m storesync``."""

from storesync.cli import main

if __name__ == "__main__":
    main()
