"""IL Guardian - Impermanent Loss Protection Service

Watches liquidity-pool reserves for every tracked pool, derives each
position's impermanent loss against its entry ratio, and withdraws a
bounded slice of shares whenever a position breaches its IL limit.
"""

__version__ = "0.1.0"
