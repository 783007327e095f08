"""
Stockmeta - AI Stock Photo Metadata Generator
=============================================

Main entry point for running Stockmeta from a source checkout. It sends
images to the Google Gemini API to generate Adobe Stock titles,
descriptions, and keywords, and exports them as an upload-ready CSV.

Usage:
    python main.py keys set <API_KEY>
    python main.py add photos/*.jpg
    python main.py generate
    python main.py export metadata.csv

Installed copies expose the same commands as ``stockmeta``.
"""

import os
import sys

# ============================================================================
# PYTHONW COMPATIBILITY - NULL STREAM SAFETY
# ============================================================================
# Under pythonw.exe, sys.stdout and sys.stderr are None, which breaks
# logging.StreamHandler and print(). Replace them with devnull wrappers.
if sys.stdout is None:
    sys.stdout = open(os.devnull, "w")
if sys.stderr is None:
    sys.stderr = open(os.devnull, "w")

from stockmeta.cli import main

# ============================================================================
# APPLICATION ENTRY POINT
# ============================================================================
if __name__ == "__main__":
    sys.exit(main())
