"""
contact_reconcile.storage - Local contact store interface and SQLite backend.
"""
