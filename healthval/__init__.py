"""
healthval: multi-aspect validation of healthcare records.
"""

__version__ = "0.1.0"
