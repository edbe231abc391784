"""
Family Bank Ledger Access

Token-authenticated balance reads and atomic transaction posting against a
shared family account ledger.
"""

__version__ = "1.0.0"
