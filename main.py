"""
Main entry point for running tubequeue from a source checkout.

Equivalent to the installed `tubequeue` command.
"""

from tubequeue.cli import app

if __name__ == "__main__":
    app()
