#!/usr/bin/env python3
"""
PostgreSQL service supervisor CLI.

This is a convenience wrapper for running the package directly from the project root.
For installed packages, use the postgres-supervisor command instead.
"""

from postgres_supervisor.__main__ import main

if __name__ == "__main__":
    main()
