"""bisket: lightweight application version switcher.

Tracks the tagged versions of one application, runs the latest one (plus
any preview tags) as supervised child processes on local ports, and
reverse-proxies traffic to whichever instance is active:
 - version catalog refreshed from a git remote
 - reconciliation of desired versions against live instances
 - per-instance process supervision
 - routing with a re-validated fast-path cache
"""
from __future__ import annotations

__version__ = "0.1.0"
