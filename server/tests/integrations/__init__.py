"""
Integration test modules

Tests for the e-signature provider adapters and webhook reconciliation.
"""
