#!/usr/bin/env python3
"""

Usage:
    python Main.py serve [--port 8000]
    python Main.py probe [--url ws://localhost:8000/speedtest]

Or
    python -m sockplex serve | probe [...]
"""

from sockplex.__main__ import main

if __name__ == "__main__":
    main()
