"""
Core modules for the storage marketplace.

This package contains the liveness rule and tracker, token arithmetic,
the purchase orchestrator and the provider directory.
"""
