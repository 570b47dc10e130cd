"""
Strategy data models and normalization.
"""
