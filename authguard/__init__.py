"""
AuthGuard - password and TOTP authentication core.
"""

__version__ = "1.0.0"
