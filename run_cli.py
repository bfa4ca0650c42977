#!/usr/bin/env python3
"""CLI entry point for tiered agents."""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from agent.config import load_config
from cli.cli_app import CLIApp


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.json"
    profile = sys.argv[2] if len(sys.argv) > 2 else "default"
    config = load_config(config_path)
    app = CLIApp(config, profile=profile)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
