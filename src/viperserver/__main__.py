"""CLI entry point for viperserver."""

from viperserver.cli import cli

if __name__ == "__main__":
    cli()
