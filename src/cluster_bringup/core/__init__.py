"""Orchestration core: conditions, remediation, stage execution and sequencing."""
