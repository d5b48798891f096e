"""
RPA Elysium workflow automation engine

Runs config-driven automation workflows:
- Ordered steps dispatched to pluggable action handlers
- Per-step retry with exponential backoff and a run-level time budget
- Cron scheduling without catch-up storms
- Durable run history in SQLite
"""

__version__ = "0.1.0"
