"""
DePIN storage marketplace core.

Provider liveness tracking and buyer-side storage purchase orchestration
against a payment-token chain and a shared inventory store.
"""

__version__ = "0.1.0"
