"""Chainly workflow execution engine."""
