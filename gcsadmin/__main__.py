"""Module entrypoint for `python -m gcsadmin`."""

from gcsadmin.cli import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
