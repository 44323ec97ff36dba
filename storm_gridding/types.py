"""Types and Literals used by storm_gridding functions and methods."""

from typing import Literal

VariogramFamily = Literal["gaussian", "spherical", "exponential"]

ErrorPolicy = Literal["raise", "nan"]

WindowPolicy = Literal["bbox", "bounds"]
