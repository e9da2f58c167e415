"""Package entry point for ``python -m opensubs_ai``.

Delegates to the CLI's main().
"""

from opensubs_ai.cli import main

if __name__ == "__main__":
    main()
