"""
Entitlements Service for the Learnpath Access Layer.
"""
