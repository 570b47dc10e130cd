"""
autoentry - Strategy-Driven Trade Entry Automation

Evaluates strategy entry conditions against live multi-timeframe market data,
monitors pending setups on an adaptive schedule and places exactly one broker
order per analysis when the conditions are met.
"""

__version__ = "0.1.0"
__author__ = "autoentry Team"
