#!/usr/bin/env python
"""Start a trading session from a checkout without installing the package.

Usage:
    python scripts/run_bot.py --config config.yaml
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from leprechaun.cli import main

if __name__ == "__main__":
    sys.exit(main(["run", *sys.argv[1:]]))
