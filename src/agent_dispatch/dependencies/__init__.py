"""Dependency extraction from task text and graph analysis."""
