"""
contact_reconcile - Incremental contact directory reconciliation.

Reconciles remote contact snapshots into a local contact store with
field-level diffs, batched store mutations and a resumable watermark.
"""

__version__ = "0.1.0"
