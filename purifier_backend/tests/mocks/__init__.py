"""Mocks for external services used across the test-suite."""
