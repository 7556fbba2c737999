"""
Main entry point for the pt-historical job runner.

This script loads the account configuration and job description, sets up
logging, and drives one Historical PowerTrack job to completion.
"""

import sys

from pthistorical.cli import main


if __name__ == "__main__":
    sys.exit(main())
