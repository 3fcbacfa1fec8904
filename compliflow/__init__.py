"""Compliflow: orchestration core for multi-agent compliance workflows."""

__version__ = "0.1.0"
