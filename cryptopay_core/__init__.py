"""CryptoPay Core: payment requests and on-chain transaction settlement."""

__version__ = "0.1.0"
