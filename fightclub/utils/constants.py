"""Shared constants for fights and settlement."""

# Positions smaller than this are treated as fully closed (float residue from partial fills)
DUST_THRESHOLD = 0.0000001

# Scores closer than this are a draw
SCORE_EPSILON = 0.000001

# Fallback leverage for margin estimates when a fill carries none
DEFAULT_LEVERAGE = 10
