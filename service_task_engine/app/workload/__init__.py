"""Workload accounting per person."""
