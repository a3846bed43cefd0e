"""
Graph OAuth credential lifecycle service.

Obtains, stores, rotates and diagnoses long-lived Graph API access
credentials, and resolves the business account they grant access to.
"""

__version__ = "0.1.0"
