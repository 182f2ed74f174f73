"""Expense / SG&A approval workflow with freee synchronization."""

__version__ = "1.0.0"
