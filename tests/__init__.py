"""
Test package for capacity_finder.
"""
