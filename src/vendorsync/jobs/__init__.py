"""Operator jobs."""
