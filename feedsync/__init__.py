"""
Feed Sync

Keeps a bounded local cache of a remote, paginated news feed in sync with the
server of record and serves consistent, paged views of it.
"""

__version__ = "1.0.0"
