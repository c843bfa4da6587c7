"""
External integration modules for the signing engine.
"""
