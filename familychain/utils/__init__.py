"""
Utility helpers.
"""
