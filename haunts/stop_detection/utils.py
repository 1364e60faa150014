import numpy as np
from scipy.spatial.distance import cdist
from haunts.constants import EARTH_RADIUS_METERS


def _haversine_distance(coord1, coord2):
    """
    Compute the haversine distance between two points on Earth.

    Parameters:
        coord1: [lat1, lon1] in radians
        coord2: [lat2, lon2] in radians

    Returns:
        Distance in meters.
    """
    delta_lat = coord2[0] - coord1[0]
    delta_lon = coord2[1] - coord1[1]
    a = np.sin(delta_lat / 2.0) ** 2 + np.cos(coord1[0]) * np.cos(
        coord2[0]) * np.sin(delta_lon / 2.0) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def haversine(lat1, lon1, lat2, lon2):
    """Great-circle distance in meters between two points given in degrees."""
    return float(_haversine_distance(np.radians([lat1, lon1]), np.radians([lat2, lon2])))


def haversine_to_point(lats, lons, lat, lon):
    """
    Vectorized great-circle distance from many points to a single point.

    Parameters
    ----------
    lats, lons : array-like
        Coordinates in degrees.
    lat, lon : float
        Reference point in degrees.

    Returns
    -------
    numpy.ndarray
        Distances in meters.
    """
    lats = np.radians(np.asarray(lats, dtype=float))
    lons = np.radians(np.asarray(lons, dtype=float))
    return _haversine_distance([lats, lons], np.radians([lat, lon]))


def _centroid(coords):
    """Arithmetic mean of [lat, lon] rows, in degrees."""
    return np.asarray(coords, dtype=float).mean(axis=0)


def _spread(coords, center, min_radius=0):
    """
    Maximum haversine distance from any row of `coords` to `center`, floored at `min_radius`.

    Parameters
    ----------
    coords : numpy.ndarray
        [lat, lon] rows in degrees.
    center : array-like
        [lat, lon] in degrees.
    min_radius : float
        Lower bound on the returned radius, in meters.
    """
    coords = np.asarray(coords, dtype=float)
    if len(coords) == 0:
        return float(min_radius)
    dists = cdist(np.radians(coords),
                  np.radians(np.asarray(center, dtype=float))[None, :],
                  metric=lambda u, v: _haversine_distance(u, v))
    return float(max(dists.max(), min_radius))
