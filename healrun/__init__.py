"""
healrun - declarative end-to-end scenarios with automatic remediation.
"""

__version__ = "0.1.0"
