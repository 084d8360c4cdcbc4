#!/usr/bin/env python3
"""Standalone CLI runner for the subscription sweeps.

Usage:
    python marketplace_cli.py --help
    python marketplace_cli.py downgrade-expired
    python marketplace_cli.py reset-monthly --now 2026-05-01T00:00:00Z
    python marketplace_cli.py plans

Crontab example:
    5 0 * * *  python /srv/marketplace/marketplace_cli.py downgrade-expired
    10 0 1 * * python /srv/marketplace/marketplace_cli.py reset-monthly
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cli import subscriptions

if __name__ == "__main__":
    subscriptions()
