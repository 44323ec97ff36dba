"""Constants used by various functions and methods within the library"""

RADIUS_OF_EARTH_M: float = 6371000.0  # Average radius of Earth (m)

# 1 knot = 1852 m / 3600 s
KNOTS_TO_MS: float = 1852.0 / 3600.0

# Distance below which two locations are treated as coincident
DUPLICATE_TOLERANCE: float = 1e-6

DEFAULT_N_BINS: int = 15
DEFAULT_DIRECTION_TOLERANCE: float = 22.5  # degrees
DEFAULT_IDW_POWER: float = 2.0
DEFAULT_MAX_CONDITION: float = 1e12
