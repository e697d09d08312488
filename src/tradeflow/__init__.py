"""
tradeflow - orchestration core for a multi-agent investment analysis pipeline.
"""

__version__ = "0.1.0"
