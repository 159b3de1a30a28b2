"""CLI entry point for python -m genqueue"""
from genqueue.cli.commands import app

if __name__ == "__main__":
    app()
