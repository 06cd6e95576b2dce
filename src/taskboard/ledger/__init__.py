"""Position ledger: the authoritative column membership and ordering of tasks.

This package provides the board model, the file-backed store with its
per-board transaction, and invariant checks used by the move reconciler.
"""
