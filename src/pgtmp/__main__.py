"""Entry point for ``python -m pgtmp`` (also used by the background relay)."""

from pgtmp.cli import main

if __name__ == "__main__":
    main()
