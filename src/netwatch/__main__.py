import sys

from .cli import main

if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
