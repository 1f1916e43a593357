"""
Listkeeper - Campaign List Consistency & Rebalancing Engine

Keeps one master list, three rotating campaign lists and one append-only
suppression list consistent: bounces are suppressed, campaign lists are kept
within balance tolerance, and every run is audited and reported.

Core modules:
- coordinator: Workflow scheduling, the five-list lock and run lifecycle
- validator: Sanitizes advisory suppression and rebalancing plans
- engine: Applies validated plans to the remote list store
- ledger: Local contact -> list membership record
- advisory: Inference service boundary and rule-based fallbacks
- audit: Relational audit log of maintenance runs
- notifications: Teams run summaries
"""

__version__ = "1.0.0"

__all__ = [
    'config',
    'coordinator',
    'validator',
    'engine',
    'ledger',
    'list_store',
    'advisory',
    'audit',
    'notifications',
]
