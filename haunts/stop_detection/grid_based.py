import numpy as np
import pandas as pd
import haunts.io.base as loader
from haunts.constants import DEFAULT_PLACE_PARAMS, METERS_PER_DEGREE
from haunts.models import PlaceCluster, StationaryPoint
from haunts.stop_detection import utils
from haunts.stop_detection.stationary import points_from_df


def grid_cell_keys(latitude, longitude, grid_cell_size=DEFAULT_PLACE_PARAMS['grid_cell_size']):
    """
    Integer grid cell indices for coordinates in degrees.

    A cell is `grid_cell_size / METERS_PER_DEGREE` degrees on a side, which is
    roughly `grid_cell_size` meters at the equator. Indices are truncated
    toward zero, so the cells on either side of the equator and of the prime
    meridian share index 0.

    Returns
    -------
    tuple of numpy.ndarray
        (lat_key, lon_key), int64.
    """
    cell_deg = grid_cell_size / METERS_PER_DEGREE
    lat_key = np.trunc(np.asarray(latitude, dtype=float) / cell_deg).astype('int64')
    lon_key = np.trunc(np.asarray(longitude, dtype=float) / cell_deg).astype('int64')
    return lat_key, lon_key


def grid_cluster_labels(data,
                        grid_cell_size=DEFAULT_PLACE_PARAMS['grid_cell_size'],
                        min_visits=DEFAULT_PLACE_PARAMS['min_visits'],
                        traj_cols=None,
                        **kwargs):
    """
    Group stationary points into uniform grid cells.

    Parameters
    ----------
    data : pd.DataFrame
        Stop table with latitude and longitude columns.
    grid_cell_size : float
        Approximate side of a cell in meters.
    min_visits : int
        Cells with fewer points are labelled as noise.
    traj_cols : dict, optional
        Column name overrides.

    Returns
    -------
    pd.Series
        Integer cluster labels aligned with `data.index`, numbered by first
        appearance of the cell. Noise gets labels of -1.
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError("Input 'data' must be a pandas DataFrame or GeoDataFrame.")

    labels = pd.Series(-1, index=data.index, name='cluster', dtype='int64')
    if data.empty:
        return labels

    traj_cols = loader._parse_traj_cols(data.columns, traj_cols, kwargs, warn=False)
    loader._has_spatial_cols(data.columns, traj_cols)

    lat_key, lon_key = grid_cell_keys(data[traj_cols['latitude']], data[traj_cols['longitude']], grid_cell_size)
    cells = pd.Series(list(zip(lat_key, lon_key)), index=data.index)

    cell_ids = pd.Series(pd.factorize(cells)[0], index=data.index)
    sizes = cell_ids.map(cell_ids.value_counts())
    keep = sizes >= min_visits

    # renumber surviving cells consecutively, preserving first-appearance order
    labels[keep] = pd.factorize(cell_ids[keep])[0]
    return labels


def _summarize_cluster(members, min_radius):
    coords = np.array([[p.latitude, p.longitude] for p in members])
    centroid = utils._centroid(coords)
    spread = utils._spread(coords, centroid, min_radius=min_radius)
    return PlaceCluster(latitude=float(centroid[0]),
                        longitude=float(centroid[1]),
                        members=tuple(members),
                        spread_radius=spread)


def cluster_places(points,
                   grid_cell_size=DEFAULT_PLACE_PARAMS['grid_cell_size'],
                   min_visits=DEFAULT_PLACE_PARAMS['min_visits'],
                   min_radius=DEFAULT_PLACE_PARAMS['min_radius'],
                   traj_cols=None,
                   **kwargs):
    """
    Cluster stationary points into candidate places on a uniform grid.

    Every point goes to exactly one cell; a cell becomes a cluster whose
    centroid is the arithmetic mean of its members and whose spread radius is
    the largest member-to-centroid haversine distance, floored at
    `min_radius`. Stops a few meters apart on either side of a cell edge end
    up in different clusters; the registry's proximity merge absorbs most of
    those.

    Parameters
    ----------
    points : list of StationaryPoint or pd.DataFrame
        Stationary points, or a stop table as returned by `stationary_points`.
    grid_cell_size : float, optional
        Approximate side of a cell in meters. Default is 50.
    min_visits : int, optional
        Clusters with fewer member points are dropped. Default is 2.
    min_radius : float, optional
        Floor on the spread radius in meters. Default is 25.
    traj_cols : dict, optional
        Column name overrides when `points` is a DataFrame.

    Returns
    -------
    list of PlaceCluster
        In order of first appearance of their cell.
    """
    if isinstance(points, pd.DataFrame):
        points = points_from_df(points, traj_cols=traj_cols, **kwargs)
    points = list(points)
    if not points:
        return []
    if not all(isinstance(p, StationaryPoint) for p in points):
        raise TypeError("Input 'points' must be StationaryPoint objects or a stop table DataFrame.")

    lat_key, lon_key = grid_cell_keys([p.latitude for p in points],
                                      [p.longitude for p in points],
                                      grid_cell_size)
    grid = {}
    for key, point in zip(zip(lat_key.tolist(), lon_key.tolist()), points):
        grid.setdefault(key, []).append(point)

    return [_summarize_cluster(members, min_radius)
            for members in grid.values()
            if len(members) >= min_visits]
