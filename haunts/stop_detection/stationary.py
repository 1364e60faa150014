import math
import pandas as pd
import haunts.io.base as loader
from haunts.constants import DEFAULT_PLACE_PARAMS
from haunts.models import StationaryPoint


def _is_stationary(speed, max_speed):
    # unknown speed counts as stationary, negative speeds fall below any threshold
    if speed is None or (isinstance(speed, float) and math.isnan(speed)):
        speed = 0.0
    return speed < max_speed


class StationaryRunTracker:
    """
    Incremental stationary-run detection over one session of fixes.

    A run opens on the first sample slower than `max_speed` and closes on the
    first sample at or above it, or when the session ends. Closed runs lasting
    at least `min_dwell` seconds are reported as a StationaryPoint anchored at
    the run's first sample.
    """

    def __init__(self,
                 max_speed=DEFAULT_PLACE_PARAMS['max_speed'],
                 min_dwell=DEFAULT_PLACE_PARAMS['min_dwell']):
        self.max_speed = max_speed
        self.min_dwell = min_dwell
        self._start = None
        self._last = None

    @property
    def run_open(self):
        return self._start is not None

    def reset(self):
        self._start = None
        self._last = None

    def _close(self, end_timestamp):
        start = self._start
        self._start = None
        duration = end_timestamp - start.timestamp
        if duration >= self.min_dwell:
            return StationaryPoint(latitude=start.latitude,
                                   longitude=start.longitude,
                                   start_timestamp=start.timestamp,
                                   duration=duration)
        return None

    def update(self, sample):
        """Feed the next sample; returns a StationaryPoint when a qualifying run closes."""
        self._last = sample
        if _is_stationary(sample.speed, self.max_speed):
            if self._start is None:
                self._start = sample
            return None
        if self._start is not None:
            return self._close(sample.timestamp)
        return None

    def finish(self):
        """Close the open run at the session's last sample and forget the session."""
        point = None
        if self._start is not None:
            point = self._close(self._last.timestamp)
        self.reset()
        return point


def extract_stationary_points(sessions,
                              max_speed=DEFAULT_PLACE_PARAMS['max_speed'],
                              min_dwell=DEFAULT_PLACE_PARAMS['min_dwell']):
    """
    Extract stationary points from independent sessions of LocationSample.

    Parameters
    ----------
    sessions : iterable of sequences of LocationSample
        Each session is scanned in the given order; runs never cross sessions.
    max_speed : float
        Speed (m/s) below which a sample is stationary.
    min_dwell : float
        Minimum run length in seconds.

    Returns
    -------
    list of StationaryPoint
        Concatenated over sessions, in session order.
    """
    points = []
    tracker = StationaryRunTracker(max_speed=max_speed, min_dwell=min_dwell)
    for session in sessions:
        session = list(session)
        if len(session) < 2:
            continue
        tracker.reset()
        for sample in session:
            point = tracker.update(sample)
            if point is not None:
                points.append(point)
        point = tracker.finish()
        if point is not None:
            points.append(point)
    return points


def stationary_points(data,
                      max_speed=DEFAULT_PLACE_PARAMS['max_speed'],
                      min_dwell=DEFAULT_PLACE_PARAMS['min_dwell'],
                      traj_cols=None,
                      **kwargs):
    """
    Detect stationary runs in a trajectory table and summarize them as a stop table.

    Parameters
    ----------
    data : pd.DataFrame
        Location fixes with latitude, longitude, timestamp (or datetime) and
        speed columns. A `session_id` column splits the data into sessions,
        otherwise the whole frame is one session.
    max_speed : float, optional
        Speed in m/s below which a fix is stationary. Default is 1.0.
    min_dwell : float, optional
        Minimum duration in seconds of a retained run. Default is 120.
    traj_cols : dict, optional
        Column name overrides.
    **kwargs
        Column names passed individually.

    Returns
    -------
    pd.DataFrame
        One row per stationary point with latitude, longitude,
        start_timestamp, end_timestamp and duration (seconds), plus the
        session column when present.
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError("Input 'data' must be a pandas DataFrame or GeoDataFrame.")

    user_cols = traj_cols
    traj_cols = loader._parse_traj_cols(data.columns, traj_cols, kwargs, warn=False)
    out_cols = [traj_cols['latitude'], traj_cols['longitude'], traj_cols['start_timestamp'],
                traj_cols['end_timestamp'], traj_cols['duration']]
    has_sessions = traj_cols['session_id'] in data.columns
    if has_sessions:
        out_cols.append(traj_cols['session_id'])
    if data.empty:
        return pd.DataFrame(columns=out_cols)

    data = loader.from_df(data, traj_cols=user_cols, **kwargs)

    rows = []
    for sid, group in loader._session_groups(data, traj_cols):
        samples = loader.samples_from_df(group, traj_cols=traj_cols)
        for p in extract_stationary_points([samples], max_speed=max_speed, min_dwell=min_dwell):
            row = [p.latitude, p.longitude, p.start_timestamp, p.end_timestamp, p.duration]
            if has_sessions:
                row.append(sid)
            rows.append(row)

    return pd.DataFrame(rows, columns=out_cols)


def points_from_df(stops, traj_cols=None, **kwargs):
    """Turn a stop table back into StationaryPoint objects."""
    traj_cols = loader._parse_traj_cols(stops.columns, traj_cols, kwargs, warn=False)
    loader._has_spatial_cols(stops.columns, traj_cols)

    start = traj_cols['start_timestamp']
    if start not in stops.columns:
        raise ValueError(f"Missing {start} column in {list(stops.columns)}.")
    if loader._has_duration_cols(stops.columns, traj_cols):
        duration = stops[traj_cols['duration']]
    elif loader._has_end_cols(stops.columns, traj_cols):
        duration = stops[traj_cols['end_timestamp']] - stops[start]
    else:
        raise ValueError("Missing required (end or duration) temporal columns for stop_table dataframe.")

    return [StationaryPoint(float(lat), float(lon), float(t0), float(d))
            for lat, lon, t0, d in zip(stops[traj_cols['latitude']], stops[traj_cols['longitude']],
                                       stops[start], duration)]
