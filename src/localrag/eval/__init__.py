"""Evaluation harness for localrag retrieval accuracy."""

from .cli import EvaluationResult, main, run_evaluation

__all__ = ["EvaluationResult", "main", "run_evaluation"]
