"""Phase-aware monitoring for two-phase (flat price / bonding curve) AMM pools."""

__version__ = "0.1.0"
