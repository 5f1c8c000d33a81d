"""
Checkout Age Gate
=================

Age verification backend for a BigCommerce checkout. Shoppers prove they
are over 18 through a bank-backed OpenID identity provider before
age-restricted products may stay in their cart.
"""

__version__ = "1.0.0"
