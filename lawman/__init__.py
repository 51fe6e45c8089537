"""
Lawman Case Workflow Service
============================

Case lifecycle tracking for a small legal-services firm:
1. Fixed intake-to-closure state machine with an append-only history ledger
2. Derived readiness / SLA / deadline signals
3. Transactional mail with fallback, notification cooldowns, session tokens
"""

__version__ = "1.0.0"
