"""Utilities for tests in tests/*."""
