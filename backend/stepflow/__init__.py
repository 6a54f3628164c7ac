"""Stepflow - Workflow execution engine for project step graphs"""

__version__ = "1.0.0"
