"""
Comment moderation decision ledger.

Records verdicts (accept, reject, defer, highlight) on user comments,
keeps an append-only history of who decided what and when, and tells
downstream automation when scoring of a comment has finished.
"""

__version__ = "0.1.0"
