"""
Coaching payments pipeline.

Turns processor payments into time-boxed, clip-bounded coaching sessions,
routes the provider's share of each payment, reconciles transfer history
against the processor, and guards chat messages against session limits.
"""

__version__ = "1.0.0"
