"""Provide the public `taskboard` package exports."""

from __future__ import annotations

from .constraints import ConstraintEvaluator
from .reconciler import MoveReconciler, MoveResult

__all__ = ["ConstraintEvaluator", "MoveReconciler", "MoveResult"]
