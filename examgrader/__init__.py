"""Exam attempt grading engine."""

__version__ = "1.0.0"
