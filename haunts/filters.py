import warnings

import numpy as np
import pandas as pd

import haunts.io.base as loader
from haunts.constants import SEC_PER_UNIT


def _is_series_of_timestamps(series):
    is_timestamp_vectorized = np.frompyfunc(lambda x: isinstance(x, pd.Timestamp), 1, 1)
    return bool(is_timestamp_vectorized(series.values).all())


def to_timestamp(datetime, tz_offset=None):
    """
    Convert a datetime series into UNIX timestamps (seconds).

    Parameters
    ----------
    datetime : pd.Series
        datetime64 (naive or tz-aware), strings, or pd.Timestamp objects.
    tz_offset : pd.Series or int, optional
        Offset from UTC in seconds for naive values. Without it naive values
        are read as UTC, with a warning.

    Returns
    -------
    pd.Series
        float64 UNIX timestamps aligned with `datetime`.
    """
    if not (
        pd.api.types.is_datetime64_any_dtype(datetime) or
        pd.api.types.is_string_dtype(datetime) or
        (pd.api.types.is_object_dtype(datetime) and _is_series_of_timestamps(datetime))
    ):
        raise TypeError(
            f"Input must be of type datetime64, string, or an array of Timestamp objects, "
            f"but it is of type {datetime.dtype}."
        )

    if isinstance(datetime.dtype, pd.DatetimeTZDtype):
        return (datetime - pd.Timestamp(0, tz="UTC")).dt.total_seconds()

    if pd.api.types.is_datetime64_dtype(datetime):
        naive = True
        result = (datetime - pd.Timestamp(0)).dt.total_seconds()
    elif pd.api.types.is_string_dtype(datetime):
        # strings with an explicit offset e.g. '2024-01-01 12:29:00-02:00'
        naive = not datetime.str.contains(r'(?:Z|[+\-]\d{2}:\d{2})$', regex=True, na=False).any()
        parsed = pd.to_datetime(datetime, errors="coerce", utc=True)
        result = (parsed - pd.Timestamp(0, tz="UTC")).dt.total_seconds()
    else:
        f = np.frompyfunc(lambda x: x.timestamp(), 1, 1)
        return pd.Series(f(datetime).astype("float64"), index=datetime.index)

    if naive:
        if tz_offset is not None:
            return result - tz_offset
        warnings.warn(
            "The input is timezone-naive. UTC will be assumed. "
            "Consider localizing to a timezone or passing a timezone offset column.")
    return result


def split_sessions(data, max_gap=30, unit='min', traj_cols=None, **kwargs):
    """
    Number the recording sessions of a trajectory.

    A new session starts at the first fix and after every gap between
    consecutive fixes longer than `max_gap`. Existing `session_id` values
    are respected: gaps are only looked for inside each of them.

    Parameters
    ----------
    data : pd.DataFrame
        Fixes with a timestamp (or datetime) column.
    max_gap : float, optional
        Longest gap, in `unit`, allowed inside one session. Default is 30.
    unit : {'s', 'min', 'h', 'd', 'w'}, optional
        Unit of `max_gap`. Default is 'min'.
    traj_cols : dict, optional
        Column name overrides.

    Returns
    -------
    pd.Series
        int64 session numbers aligned with `data.index`, starting at 0 and
        increasing in time order within each original session.
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError("Input 'data' must be a pandas DataFrame or GeoDataFrame.")
    if unit not in SEC_PER_UNIT:
        raise ValueError(f"unit must be one of {list(SEC_PER_UNIT)}, got '{unit}'.")
    if max_gap <= 0:
        raise ValueError(f"max_gap must be positive, got {max_gap}.")

    traj_cols = loader._parse_traj_cols(data.columns, traj_cols, kwargs)
    loader._has_time_cols(data.columns, traj_cols)
    if data.empty:
        return pd.Series(dtype='int64', index=data.index, name=traj_cols['session_id'])

    ts_col = traj_cols['timestamp']
    if ts_col in data.columns:
        sec = loader._seconds(data[ts_col], ts_col)
    else:
        sec = to_timestamp(pd.to_datetime(data[traj_cols['datetime']]))

    frame = pd.DataFrame({'sec': sec.to_numpy()})
    sid = traj_cols['session_id']
    if sid in data.columns:
        frame['outer'] = data[sid].to_numpy()
        frame = frame.sort_values(['outer', 'sec'], kind='stable')
        new_outer = frame['outer'].ne(frame['outer'].shift())
    else:
        frame = frame.sort_values('sec', kind='stable')
        new_outer = pd.Series(False, index=frame.index)
        new_outer.iloc[0] = True

    gap = frame['sec'].diff() > max_gap * SEC_PER_UNIT[unit]
    sessions = (new_outer | gap).cumsum() - 1
    return pd.Series(sessions.sort_index().to_numpy(), index=data.index, dtype='int64', name=sid)
