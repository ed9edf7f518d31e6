"""Sentinel: Morpho Blue indexer and liquidation bot"""

__version__ = "1.0.0"
