"""
RF measurement models used by radio-source estimation.

This module implements the measurement functions of a located radio source
observed from known anchor (reading) positions:
- Range (TOA / two-way ranging)
- RSS (Received Signal Strength, log-distance path-loss model)

and their derivatives with respect to the estimated quantities, as needed by
the least squares fitters.
"""

import numpy as np

#: Natural logarithm of 10, used by dB derivatives
LN10 = np.log(10.0)


def toa_range(tx_pos: np.ndarray, rx_pos: np.ndarray) -> float:
    """
    Compute a range measurement between transmitter and receiver.

        d = ||p_tx - p_rx||

    Args:
        tx_pos: Transmitter (source) position [x, y] or [x, y, z] in meters.
        rx_pos: Receiver (reading) position, same dimension, in meters.

    Returns:
        Range in meters.

    Example:
        >>> anchor = np.array([0.0, 0.0, 0.0])
        >>> agent = np.array([3.0, 4.0, 0.0])
        >>> print(f"Range: {toa_range(anchor, agent):.2f} m")
        Range: 5.00 m
    """
    tx_pos = np.asarray(tx_pos, dtype=float)
    rx_pos = np.asarray(rx_pos, dtype=float)
    if tx_pos.shape != rx_pos.shape:
        raise ValueError(
            f"Positions must have the same shape, got {tx_pos.shape} and {rx_pos.shape}"
        )
    return float(np.linalg.norm(rx_pos - tx_pos))


def toa_range_jacobian(source_pos: np.ndarray, anchor_positions: np.ndarray) -> np.ndarray:
    """
    Jacobian of ranges w.r.t. the source position.

    Row i is the unit vector from anchor i to the source:

        ∂d_i/∂p = (p - a_i) / ||p - a_i||

    Rows for anchors that coincide with the source are zero.

    Args:
        source_pos: Source position (dim,).
        anchor_positions: Anchor positions (m × dim).

    Returns:
        Jacobian matrix (m × dim).

    Example:
        >>> toa_range_jacobian(np.zeros(2), np.array([[3.0, 4.0]]))
        array([[-0.6, -0.8]])
    """
    source_pos = np.asarray(source_pos, dtype=float)
    anchor_positions = np.atleast_2d(np.asarray(anchor_positions, dtype=float))

    diff = source_pos - anchor_positions
    ranges = np.linalg.norm(diff, axis=1)
    J = np.zeros_like(diff)
    nonzero = ranges > 0.0
    J[nonzero] = diff[nonzero] / ranges[nonzero, None]
    return J


def rss_pathloss(
    p_ref_dbm: float,
    distance,
    path_loss_exp: float = 2.0,
    d_ref: float = 1.0,
):
    """
    Compute RSS using the log-distance path-loss model.

        p_R = p_ref - 10*η*log10(d / d_ref)

    where:
        p_R: received signal power (dBm)
        p_ref: reference power measured at distance d_ref (dBm)
        η (eta): path-loss exponent
        d: distance from source to reading position

    Args:
        p_ref_dbm: Reference RSS at distance d_ref in dBm. For d_ref = 1 m
                  this is the transmitted power of the source.
        distance: Distance(s) from source to reading position in meters.
        path_loss_exp: Path-loss exponent η. Defaults to 2.0 (free space).
                      Typical indoor values: 2.5-4.0.
        d_ref: Reference distance in meters. Defaults to 1.0.

    Returns:
        Received signal strength in dBm (scalar or array like distance).

    Raises:
        ValueError: If any distance is not positive.

    Example:
        >>> rss = rss_pathloss(p_ref_dbm=-40.0, distance=10.0, path_loss_exp=2.5)
        >>> print(f"RSS: {rss:.2f} dBm")
        RSS: -65.00 dBm
    """
    d = np.asarray(distance, dtype=float)
    if np.any(d <= 0):
        raise ValueError("Distance must be positive")

    rss_dbm = p_ref_dbm - 10 * path_loss_exp * np.log10(d / d_ref)

    return float(rss_dbm) if rss_dbm.ndim == 0 else rss_dbm


def rss_to_distance(
    rss_dbm: float,
    p_ref_dbm: float,
    path_loss_exp: float = 2.0,
    d_ref: float = 1.0,
) -> float:
    """
    Estimate distance from RSS using the inverse path-loss model.

        d = d_ref * 10^((p_ref - p_R) / (10*η))

    Args:
        rss_dbm: Received signal strength in dBm.
        p_ref_dbm: Reference RSS at distance d_ref in dBm.
        path_loss_exp: Path-loss exponent η. Defaults to 2.0.
        d_ref: Reference distance in meters. Defaults to 1.0.

    Returns:
        Estimated distance in meters.

    Example:
        >>> distance = rss_to_distance(rss_dbm=-65.0, p_ref_dbm=-40.0, path_loss_exp=2.5)
        >>> print(f"Distance: {distance:.2f} m")
        Distance: 10.00 m
    """
    if path_loss_exp == 0:
        raise ValueError("Path-loss exponent must be non-zero")
    exponent = (p_ref_dbm - rss_dbm) / (10 * path_loss_exp)
    return d_ref * (10**exponent)


def rss_distance_derivative(distance, path_loss_exp: float = 2.0):
    """
    Derivative of the received power w.r.t. distance (dB per meter).

        ∂p_R/∂d = -10*η / (ln(10) * d)

    Used to propagate reading position uncertainty into RSS variance.

    Example:
        >>> print(f"{rss_distance_derivative(10.0, 2.0):.4f}")
        -0.8686
    """
    d = np.asarray(distance, dtype=float)
    derivative = -10.0 * path_loss_exp / (LN10 * d)
    return float(derivative) if derivative.ndim == 0 else derivative
