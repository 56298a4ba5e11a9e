"""
Kaleidoplan Test Suite
"""
