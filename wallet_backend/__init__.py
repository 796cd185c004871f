"""Custodial wallet backend: deposits, KYC, copy trading, earn vaults and support."""

__version__ = '1.0.0'
