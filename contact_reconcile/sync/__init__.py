"""
contact_reconcile.sync - Reconciliation core.

Field differ, contact operations builder, operation batch and the
reconciliation engine.
"""
