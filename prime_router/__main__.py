import sys

from prime_router.cli import main

if __name__ == "__main__":
    sys.exit(main())
