"""
Zenith Engine - parameter optimization and walk-forward validation for trading strategies.
"""

__version__ = '0.1.0'
