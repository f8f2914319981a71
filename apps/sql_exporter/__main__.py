"""Entry point for the SQL exporter module."""

from __future__ import annotations

from apps.sql_exporter.main import main

if __name__ == "__main__":
    raise SystemExit(main())
