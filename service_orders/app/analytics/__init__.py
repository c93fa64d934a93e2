"""
Sales analytics package.
"""
