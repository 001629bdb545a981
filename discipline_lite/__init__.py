"""
Disciplinary Case Service
=========================

Tracks disciplinary cases against organisation members from intake through
review, decision and publication:
1. Case intake with evidence upload (ImageKit or local storage)
2. Status workflow, decisions and an append-only internal note log
3. Role- and visibility-gated access
"""

__version__ = "1.0.0"
