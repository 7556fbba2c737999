"""
Defines the package's version string.

This is the single source of truth for the version number.
It is used in the HTTP User-Agent header, in the CLI banner, and for packaging.
"""

__version__ = "1.0.0"
