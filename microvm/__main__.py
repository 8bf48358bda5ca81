"""Allow ``python -m microvm``."""

import sys

from microvm import cli

if __name__ == "__main__":
    sys.exit(cli.main())
