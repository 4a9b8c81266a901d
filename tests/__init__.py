"""
Calendar Sync Test Suite
"""
