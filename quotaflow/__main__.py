"""Main entry point when executing quotaflow as a package.

This allows running the package using python -m quotaflow.
"""

from quotaflow.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
