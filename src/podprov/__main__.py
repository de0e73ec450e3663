"""Entry point for ``python -m podprov``."""

from podprov.cli.main import main


if __name__ == "__main__":
    main()
