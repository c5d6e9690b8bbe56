"""
API key issuance and request authorization.
"""
__version__ = "1.0.0"
