"""
Core Wallet

User authentication and refresh-token sessions gating a transactional
balance ledger: atomic transfers and deposits that never overdraw and stay
correct under concurrent access.
"""

__version__ = "1.0.0"
