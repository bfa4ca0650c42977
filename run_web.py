#!/usr/bin/env python3
"""Web API entry point for tiered agents."""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from agent.config import load_config
from web.app import create_app


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.json"
    config = load_config(config_path)

    print("\n  Tiered Agents - Web API")
    print(f"  Providers: {', '.join(config.provider_priority)}")
    print(f"  Tiering: {'on' if config.tiering.enabled else 'off'} (local: {config.tiering.local_provider})")
    print("  Listening on http://localhost:5000\n")

    app = create_app(config)
    app.run(host="0.0.0.0", port=5000, debug=False, threaded=True)


if __name__ == "__main__":
    main()
