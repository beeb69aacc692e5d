#!/usr/bin/env python3
"""Entry point for the TravelPact command-line tools."""

from travelpact.main import main
import asyncio
import sys

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
