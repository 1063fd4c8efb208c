"""Operator command line for driftwatch."""
