"""Allow running the CLI via ``python -m storyrunner``."""

from storyrunner.cli import main

if __name__ == "__main__":
    main()
