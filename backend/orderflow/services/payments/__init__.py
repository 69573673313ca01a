"""
Payment proof intake and verification.
"""
