"""
Orderflow: order lifecycle and payment-proof verification service.
"""

__version__ = "1.0.0"
