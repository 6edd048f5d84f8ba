#!/usr/bin/env python3
"""

Usage:
    python Main.py client [--url ws://localhost:8787/ws] [--room ABC123]
    python Main.py server [--port 8787]

Or
    python -m rally_client client [--url ws://localhost:8787/ws] [--room ABC123]
"""

from rally_client.__main__ import main

if __name__ == "__main__":
    main()
