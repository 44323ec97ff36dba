"""
Variograms
----------

Parametric semivariance models and their fitting to empirical variogram bins
by weighted least squares.

The model family is a closed set of formulae selected by the `family` field of
a `VariogramModel`, all sharing the signature (h, nugget, psill, range).
"""

from dataclasses import dataclass
import logging
import numpy as np
from scipy.optimize import least_squares

from .config import FitConfig
from .constants import DUPLICATE_TOLERANCE
from .empirical import VariogramBin
from .types import VariogramFamily
from .utils import FitConvergenceError

FAMILIES: tuple[VariogramFamily, ...] = ("gaussian", "spherical", "exponential")


def _gaussian(
    h: np.ndarray, nugget: float, psill: float, range: float
) -> np.ndarray:
    return nugget + psill * (1.0 - np.exp(-np.power(h, 2.0) / range**2))


def _spherical(
    h: np.ndarray, nugget: float, psill: float, range: float
) -> np.ndarray:
    h_scaled = np.minimum(h / range, 1.0)
    return nugget + psill * (1.5 * h_scaled - 0.5 * np.power(h_scaled, 3.0))


def _exponential(
    h: np.ndarray, nugget: float, psill: float, range: float
) -> np.ndarray:
    return nugget + psill * (1.0 - np.exp(-h / range))


def evaluate_model(
    family: VariogramFamily,
    h: np.ndarray,
    nugget: float,
    psill: float,
    range: float,
) -> np.ndarray:
    """
    Evaluate the semivariance of a model family at lag distances.

    Parameters
    ----------
    family : VariogramFamily
        One of "gaussian", "spherical", "exponential".
    h : numpy.ndarray
        Lag distances (non-negative).
    nugget : float
    psill : float
    range : float

    Returns
    -------
    gamma : numpy.ndarray
        Semivariance at each lag.
    """
    match family:
        case "gaussian":
            return _gaussian(h, nugget, psill, range)
        case "spherical":
            return _spherical(h, nugget, psill, range)
        case "exponential":
            return _exponential(h, nugget, psill, range)
        case _:
            raise ValueError(
                f"Unknown variogram family: {family}. "
                + f"Expected one of {FAMILIES}"
            )


@dataclass(frozen=True)
class VariogramModel:
    """
    Parametric variogram model.

    Gaussian:
        nugget + psill * (1 - exp(-h^2 / range^2))
    Spherical:
        nugget + psill * (1.5 h / range - 0.5 (h / range)^3), for h < range,
        nugget + psill otherwise
    Exponential:
        nugget + psill * (1 - exp(-h / range))

    Parameters
    ----------
    family : VariogramFamily
        One of "gaussian", "spherical", "exponential".
    nugget : float
        Semivariance in the limit h -> 0.
    psill : float
        Partial sill, the semivariance added to the nugget as h grows.
    range : float
        Range parameter.
    """

    family: VariogramFamily
    nugget: float
    psill: float
    range: float

    def __post_init__(self) -> None:
        if self.family not in FAMILIES:
            raise ValueError(
                f"family must be one of {FAMILIES}, got {self.family}"
            )
        if not np.isfinite([self.nugget, self.psill, self.range]).all():
            raise ValueError("Variogram parameters must be finite")
        if self.nugget < 0:
            raise ValueError(f"nugget must be non-negative, got {self.nugget}")
        if self.psill < 0:
            raise ValueError(f"psill must be non-negative, got {self.psill}")
        if self.range <= 0:
            raise ValueError(f"range must be positive, got {self.range}")
        return None

    @property
    def sill(self) -> float:
        """Total sill: nugget + psill"""
        return self.nugget + self.psill

    def gamma(self, h: np.ndarray | float) -> np.ndarray | float:
        """
        Semivariance at lag distance(s) h. At h == 0 this is the nugget (the
        limit of the model as h -> 0).
        """
        h_arr = np.asarray(h, dtype=float)
        out = evaluate_model(
            self.family, h_arr, self.nugget, self.psill, self.range
        )
        if out.ndim == 0:
            return float(out)
        return out

    def semivariance_matrix(
        self,
        dist: np.ndarray,
        tolerance: float = DUPLICATE_TOLERANCE,
    ) -> np.ndarray:
        """
        Semivariance for a matrix of distances, used to build Kriging systems.

        Coincident positions (distance <= tolerance) have a semivariance of
        exactly 0, the nugget is a discontinuity at the origin.
        """
        dist = np.asarray(dist, dtype=float)
        out = np.asarray(
            evaluate_model(
                self.family, dist, self.nugget, self.psill, self.range
            ),
            dtype=float,
        )
        out = np.where(dist <= tolerance, 0.0, out)
        return out

    def covariance(
        self,
        dist: np.ndarray,
        tolerance: float = DUPLICATE_TOLERANCE,
    ) -> np.ndarray:
        """
        Covariance for a matrix of distances: sill - semivariance. The
        covariance at coincident positions is the sill.
        """
        return self.sill - self.semivariance_matrix(dist, tolerance)

    def to_dict(self) -> dict:
        """Model parameters for reporting"""
        return {
            "family": self.family,
            "nugget": self.nugget,
            "psill": self.psill,
            "sill": self.sill,
            "range": self.range,
        }

    def __repr__(self) -> str:
        return (
            f"VariogramModel(family={self.family}, nugget={self.nugget:.4g}, "
            + f"psill={self.psill:.4g}, range={self.range:.4g})"
        )


def _bin_arrays(
    bins: list[VariogramBin],
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    lags = np.array([b.lag for b in bins], dtype=float)
    semivariances = np.array([b.semivariance for b in bins], dtype=float)
    n_pairs = np.array([b.n_pairs for b in bins], dtype=float)
    return lags, semivariances, n_pairs


def fit_weights(lags: np.ndarray, n_pairs: np.ndarray) -> np.ndarray:
    """Weighted least squares weights for each bin: n_pairs / lag^2"""
    return n_pairs / np.power(lags, 2.0)


def initial_guess(
    bins: list[VariogramBin],
    family: VariogramFamily = "spherical",
) -> VariogramModel:
    """
    Starting parameters for a variogram fit derived from the empirical bins.

    The nugget is half the semivariance of the first bin, the sill is the
    largest semivariance, and the range is half of the largest lag.
    """
    if not bins:
        raise FitConvergenceError("No bins to derive an initial guess from")
    lags, semivariances, _ = _bin_arrays(bins)
    order = np.argsort(lags)
    nugget = 0.5 * float(semivariances[order[0]])
    sill = float(np.max(semivariances))
    range_ = 0.5 * float(np.max(lags))
    return VariogramModel(
        family=family,
        nugget=nugget,
        psill=max(sill - nugget, 0.0),
        range=range_ if range_ > 0 else 1.0,
    )


def weighted_r_squared(
    bins: list[VariogramBin],
    model: VariogramModel,
) -> float:
    """
    Coefficient of determination of a model against empirical bins, using the
    fit weights n_pairs / lag^2.
    """
    lags, semivariances, n_pairs = _bin_arrays(bins)
    keep = lags > 0
    lags = lags[keep]
    semivariances = semivariances[keep]
    n_pairs = n_pairs[keep]
    w = fit_weights(lags, n_pairs)
    predicted = model.gamma(lags)
    mean = np.sum(w * semivariances) / np.sum(w)
    ss_res = np.sum(w * (semivariances - predicted) ** 2)
    ss_tot = np.sum(w * (semivariances - mean) ** 2)
    return float(1.0 - ss_res / ss_tot) if ss_tot > 0 else 0.0


def fit_variogram(
    bins: list[VariogramBin],
    initial_model: VariogramModel | None = None,
    config: FitConfig = FitConfig(),
) -> VariogramModel:
    r"""
    Fit a variogram model to empirical bins by weighted least squares.

    Minimises

    .. math::
        \sum_i w_i (\gamma_i - \gamma(h_i; \theta))^2, \quad
        w_i = n_i / h_i^2

    subject to nugget >= 0, psill >= 0 and range > 0. The weighting
    down-weights distant and sparsely supported bins.

    The range is additionally bounded above by `config.range_bound_factor`
    times the largest lag. This is not a constraint of the model itself: a
    variogram that is still rising at the largest lag would otherwise let the
    range (and the sill with it) grow without bound. A warning is logged if
    the fitted range sits on this bound.

    The lags and semivariances are normalised by their maxima before
    optimisation with `scipy.optimize.least_squares` (trust region
    reflective), and the fitted parameters scaled back.

    Parameters
    ----------
    bins : list[VariogramBin]
        Empirical variogram bins, all with positive lag.
    initial_model : VariogramModel | None
        Starting point for the optimiser. Its family is the family that is
        fitted. If None, `initial_guess` with `config.family` is used.
    config : FitConfig
        Optimiser options.

    Returns
    -------
    model : VariogramModel
        A new model with the fitted parameters.

    Raises
    ------
    FitConvergenceError
        If fewer than 3 bins are supplied, if any bin has zero lag, or if the
        optimiser does not converge within `config.max_iterations`
        evaluations.
    """
    bins = list(bins)
    if any(b.lag <= 0 for b in bins):
        # The weight n_pairs / lag^2 is undefined
        raise FitConvergenceError("Cannot fit bins with zero lag")
    if len(bins) < 3:
        raise FitConvergenceError(
            "At least 3 bins are required to fit nugget, psill and range, "
            + f"got {len(bins)}"
        )

    if initial_model is None:
        initial_model = initial_guess(bins, config.family)
    family = initial_model.family

    lags, semivariances, n_pairs = _bin_arrays(bins)
    h_scale = float(np.max(lags))
    g_scale = float(np.max(semivariances))
    g_scale = g_scale if g_scale > 0 else 1.0

    h = lags / h_scale
    g = semivariances / g_scale
    w = fit_weights(h, n_pairs)
    sqrt_w = np.sqrt(w / np.mean(w))

    range_lower = 1e-9
    range_upper = config.range_bound_factor
    lower = np.array([0.0, 0.0, range_lower])
    upper = np.array([np.inf, np.inf, range_upper])

    x0 = np.array(
        [
            initial_model.nugget / g_scale,
            initial_model.psill / g_scale,
            initial_model.range / h_scale,
        ]
    )
    x0 = np.clip(x0, lower, upper)
    if x0[2] <= range_lower:
        x0[2] = 0.5

    def residuals(theta: np.ndarray) -> np.ndarray:
        return sqrt_w * (g - evaluate_model(family, h, *theta))

    try:
        res = least_squares(
            residuals,
            x0,
            bounds=(lower, upper),
            method="trf",
            x_scale="jac",
            max_nfev=config.max_iterations,
            ftol=config.tolerance,
            xtol=config.tolerance,
            gtol=config.tolerance,
        )
    except ValueError as e:
        raise FitConvergenceError(f"Variogram fit failed: {e}") from e

    if not res.success:
        raise FitConvergenceError(
            f"Variogram fit did not converge: {res.message} "
            + f"(status {res.status}, {res.nfev} evaluations)"
        )

    nugget, psill, range_ = res.x
    model = VariogramModel(
        family=family,
        nugget=max(float(nugget), 0.0) * g_scale,
        psill=max(float(psill), 0.0) * g_scale,
        range=float(range_) * h_scale,
    )
    if np.isclose(range_, range_upper):
        logging.warning(
            f"Fitted range is at the upper bound ({range_upper} x max lag)"
        )
    logging.info(
        f"Fitted {model!r} in {res.nfev} evaluations, "
        + f"weighted R^2 = {weighted_r_squared(bins, model):.4f}"
    )
    return model
