"""
Finance DB

Database provider abstraction and cross-database migration engine for the
personal finance tracker.

DESIGN PRINCIPLES:
1. Every backend is reached through one adapter contract
2. Validate before connecting, connect before activating
3. Exactly zero or one active configuration
4. Migrations are best-effort and fully accounted for
5. Every administrative step is auditable
"""

__version__ = "1.0.0"
__author__ = "Finance Tracker Team"
