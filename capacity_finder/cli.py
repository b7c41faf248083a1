"""CLI entry points for capacity-finder package."""

import sys


def main_capacity():
    """Entry point for capacity-finder command."""
    from capacity_finder.core.main import run
    run()


def main_analyze():
    """Entry point for capacity-analyze command."""
    from capacity_finder.core.analyze import main
    sys.exit(main())


if __name__ == "__main__":
    main_capacity()
