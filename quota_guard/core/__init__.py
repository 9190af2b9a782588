"""
Core modules for Quota Guard.

This package contains period windows, scopes, entitlements, the usage
decision engine and credit wallet operations.
"""
