import os
import warnings
import pandas as pd
import geopandas as gpd
import pyarrow as pa
import pyarrow.parquet as pq
from pandas.api.types import is_datetime64_any_dtype
from haunts.constants import (DEFAULT_SCHEMA, DEFAULT_CRS, PLACE_TABLE_COLUMNS,
                              VISIT_TABLE_COLUMNS)
from haunts.models import LocationSample, Place, Visit

# utils
def _update_schema(original, new_labels):
    updated_schema = dict(original)
    for label in new_labels:
        if label in DEFAULT_SCHEMA:
            updated_schema[label] = new_labels[label]
    return updated_schema

def _parse_traj_cols(columns, traj_cols, kwargs, warn=True, defaults=DEFAULT_SCHEMA):
    """
    Internal helper to finalize trajectory column names using user input and defaults.
    """
    if traj_cols:
        for k in kwargs:
            if k in traj_cols and kwargs[k] != traj_cols[k]:
                raise ValueError(
                    f"Conflicting column name for '{k}': '{traj_cols[k]}' (from traj_cols) vs '{kwargs[k]}' (from keyword arguments)."
                )
        traj_cols = _update_schema(traj_cols, kwargs)
    else:
        traj_cols = _update_schema({}, kwargs)

    if warn:
        for key, value in traj_cols.items():
            if value not in columns:
                warnings.warn(f"Trajectory column '{value}' specified for '{key}' not found in DataFrame.")

    return _update_schema(defaults, traj_cols)

def _parse_params(defaults, params=None, kwargs=None):
    """
    Merge caller-supplied engine parameters onto `defaults`.

    Unknown parameter names raise a ValueError.
    """
    merged = dict(defaults)
    for source in (params or {}), (kwargs or {}):
        unknown = [k for k in source if k not in defaults]
        if unknown:
            raise ValueError(f"Unknown parameter(s) {unknown}. Expected a subset of {list(defaults)}.")
        merged.update(source)
    return merged

def _has_time_cols(col_names, traj_cols):
    """Checks for at least one primary or start time column."""
    dt_col = traj_cols.get('datetime')
    ts_col = traj_cols.get('timestamp')
    start_ts_col = traj_cols.get('start_timestamp')

    temporal_exists = (
        (dt_col and dt_col in col_names) or
        (ts_col and ts_col in col_names) or
        (start_ts_col and start_ts_col in col_names)
    )

    if not temporal_exists:
        raise ValueError(
            "Could not find required temporal columns in {}. The dataset must contain or map to "
            "at least one of 'datetime', 'timestamp' or 'start_timestamp'.".format(list(col_names))
        )

    return temporal_exists

def _has_end_cols(col_names, traj_cols):
    end_ts_col = traj_cols.get('end_timestamp')
    return end_ts_col is not None and end_ts_col in col_names

def _has_duration_cols(col_names, traj_cols):
    duration_col = traj_cols.get('duration')
    return duration_col is not None and duration_col in col_names

def _has_spatial_cols(col_names, traj_cols):
    traj_cols = _update_schema(DEFAULT_SCHEMA, traj_cols)

    spatial_exists = (traj_cols['latitude'] in col_names and traj_cols['longitude'] in col_names)
    if not spatial_exists:
        raise ValueError(
            "Could not find required spatial columns in {}. The dataset must contain or map to "
            "('latitude', 'longitude').".format(list(col_names))
        )

    return spatial_exists

def _has_speed_cols(col_names, traj_cols):
    if traj_cols['speed'] not in col_names:
        raise ValueError(
            f"Missing {traj_cols['speed']} column in {list(col_names)}."
            " pass `speed` as keyword argument or in traj_cols.")
    return True

def _session_groups(data, traj_cols):
    """Yield (session_id, frame) pairs; a single session when there is no session column."""
    sid = traj_cols['session_id']
    if sid in data.columns:
        for key, group in data.groupby(sid, sort=False):
            yield key, group
    else:
        yield None, data

def _seconds(ts, col_name='timestamp'):
    """
    Return `ts` as float UNIX seconds, converting datetime columns and
    millisecond or nanosecond epochs.
    """
    if is_datetime64_any_dtype(ts):
        if ts.dt.tz is None:
            warnings.warn(f"The '{col_name}' column is timezone-naive. UTC will be assumed.")
            return (ts - pd.Timestamp(0)).dt.total_seconds()
        return (ts - pd.Timestamp(0, tz="UTC")).dt.total_seconds()

    ts = pd.Series(ts, dtype='float64')
    if len(ts) == 0:
        return ts
    s_val = ts.dropna().abs()
    digits = len(str(int(s_val.iloc[0]))) if len(s_val) else 10
    if digits == 13:
        warnings.warn(f"The '{col_name}' column appears to be in milliseconds. Converting to seconds.")
        return ts / 1_000
    elif digits == 19:
        warnings.warn(f"The '{col_name}' column appears to be in nanoseconds. Converting to seconds.")
        return ts / 10**9
    return ts

def from_df(df, traj_cols=None, require_speed=True, **kwargs):
    """
    Standardize a trajectory of location fixes.

    Validates the spatial, temporal and speed columns, casts them to float,
    derives a UNIX-second `timestamp` column from `datetime` when needed and
    sorts each session chronologically.

    Parameters
    ----------
    df : pd.DataFrame or gpd.GeoDataFrame
        Location fixes, one per row.
    traj_cols : dict, optional
        Mapping of expected column names ('latitude', 'longitude', 'timestamp',
        'datetime', 'speed', 'ha', 'session_id') to names in `df`.
    **kwargs
        Column names passed individually instead of through `traj_cols`.

    Returns
    -------
    pd.DataFrame
        Copy of `df` with casted columns. A missing accuracy column is filled with 0.
    """
    if not isinstance(df, (pd.DataFrame, gpd.GeoDataFrame)):
        raise TypeError("Expected the data argument to be either a pandas DataFrame or a GeoPandas GeoDataFrame.")

    traj_cols = _parse_traj_cols(df.columns, traj_cols, kwargs)
    _has_spatial_cols(df.columns, traj_cols)
    _has_time_cols(df.columns, traj_cols)
    if require_speed:
        _has_speed_cols(df.columns, traj_cols)

    df = df.copy()
    for key in ['latitude', 'longitude', 'speed']:
        if traj_cols[key] in df.columns:
            df[traj_cols[key]] = pd.to_numeric(df[traj_cols[key]], errors='coerce').astype('float64')

    ts_col = traj_cols['timestamp']
    if ts_col in df.columns:
        df[ts_col] = _seconds(df[ts_col], ts_col)
    else:
        df[ts_col] = _seconds(pd.to_datetime(df[traj_cols['datetime']]), traj_cols['datetime'])

    if traj_cols['ha'] in df.columns:
        df[traj_cols['ha']] = pd.to_numeric(df[traj_cols['ha']], errors='coerce').astype('float64')
    else:
        df[traj_cols['ha']] = 0.0

    sort_cols = [ts_col]
    if traj_cols['session_id'] in df.columns:
        sort_cols = [traj_cols['session_id'], ts_col]
    return df.sort_values(sort_cols, kind='stable')

def samples_from_df(df, traj_cols=None, **kwargs):
    """Convert a standardized trajectory frame into a list of LocationSample, in row order."""
    traj_cols = _parse_traj_cols(df.columns, traj_cols, kwargs, warn=False)
    ha = df[traj_cols['ha']] if traj_cols['ha'] in df.columns else pd.Series(0.0, index=df.index)
    speed = df[traj_cols['speed']] if traj_cols['speed'] in df.columns else pd.Series(float('nan'), index=df.index)
    return [
        LocationSample(latitude=float(lat), longitude=float(lon), accuracy=float(acc),
                       speed=None if pd.isna(spd) else float(spd), timestamp=float(ts))
        for lat, lon, acc, spd, ts in zip(df[traj_cols['latitude']], df[traj_cols['longitude']], ha,
                                          speed, df[traj_cols['timestamp']])
    ]

def sessions_from_df(df, traj_cols=None, **kwargs):
    """Split a trajectory frame into per-session lists of LocationSample."""
    df = from_df(df, traj_cols=traj_cols, **kwargs)
    traj_cols = _parse_traj_cols(df.columns, traj_cols, kwargs, warn=False)
    return [samples_from_df(group, traj_cols=traj_cols) for _, group in _session_groups(df, traj_cols)]

# places <-> tables

def places_to_df(places):
    """One row per place with the fields collaborators persist and display."""
    rows = [{
        'id': p.id,
        'latitude': p.latitude,
        'longitude': p.longitude,
        'radius': p.radius,
        'name': p.name,
        'street_address': p.street_address,
        'category': p.category.value,
        'confidence': p.confidence,
        'is_confirmed': p.is_confirmed,
        'visit_count': p.visit_count,
        'created_at': p.created_at,
        'last_visited_at': p.last_visited_at,
    } for p in places]
    return pd.DataFrame(rows, columns=PLACE_TABLE_COLUMNS)

def visits_to_df(places):
    rows = [(p.id, v.arrival_time, v.departure_time)
            for p in places for v in p.visit_history]
    df = pd.DataFrame(rows, columns=VISIT_TABLE_COLUMNS)
    df['departure_time'] = df['departure_time'].astype('float64')
    return df

def places_from_df(places_df, visits_df=None):
    """
    Rebuild Place objects from a place table and an optional visit table.

    Visits are attached in arrival order; an open visit (missing departure)
    can only be the last one of its place.
    """
    missing = [c for c in ['id', 'latitude', 'longitude'] if c not in places_df.columns]
    if missing:
        raise ValueError(f"Missing required place columns {missing} in {list(places_df.columns)}.")

    visits = {}
    if visits_df is not None and not visits_df.empty:
        ordered = visits_df.sort_values(['place_id', 'arrival_time'], kind='stable')
        for pid, group in ordered.groupby('place_id', sort=False):
            visits[pid] = [
                Visit(float(a), None if pd.isna(d) else float(d))
                for a, d in zip(group['arrival_time'], group['departure_time'])
            ]

    def _opt(row, col, default=None):
        val = row.get(col, default)
        return default if val is None or (not isinstance(val, str) and pd.isna(val)) else val

    places = []
    for row in places_df.to_dict('records'):
        places.append(Place(
            id=str(row['id']),
            latitude=float(row['latitude']),
            longitude=float(row['longitude']),
            radius=float(_opt(row, 'radius', 50.0)),
            name=_opt(row, 'name'),
            street_address=_opt(row, 'street_address'),
            category=_opt(row, 'category', 'other'),
            confidence=float(_opt(row, 'confidence', 0.5)),
            is_confirmed=bool(_opt(row, 'is_confirmed', False)),
            visit_history=visits.get(str(row['id']), []),
            created_at=float(_opt(row, 'created_at', 0.0)),
            last_visited_at=float(_opt(row, 'last_visited_at', 0.0)),
        ))
    return places

def places_to_gdf(places, crs=DEFAULT_CRS):
    df = places_to_df(places)
    return gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df.longitude, df.latitude), crs=crs)

def to_file(places, path, format="csv"):
    """
    Write the place table to `path`.

    'csv' and 'parquet' write the tabular form, 'geojson' writes point
    geometries for display layers. Visit histories are written by
    PlaceFileStore, not here.
    """
    assert format in {"csv", "parquet", "geojson"}
    if format == "csv":
        places_to_df(places).to_csv(path, index=False)
    elif format == "parquet":
        pq.write_table(pa.Table.from_pandas(places_to_df(places), preserve_index=False), path)
    else:
        places_to_gdf(places).to_file(path, driver="GeoJSON")

def from_file(path, format="csv"):
    assert format in {"csv", "parquet", "geojson"}
    if format == "csv":
        df = pd.read_csv(path, dtype={'id': str, 'name': object, 'street_address': object})
    elif format == "parquet":
        df = pq.read_table(path).to_pandas()
    else:
        df = pd.DataFrame(gpd.read_file(path).drop(columns='geometry'))
    return places_from_df(df)


class PlaceFileStore:
    """
    Tabular persistence for a place collection: `places.<format>` and
    `visits.<format>` side by side in `directory`.
    """

    def __init__(self, directory, format="parquet"):
        assert format in {"csv", "parquet"}
        self.directory = str(directory)
        self.format = format

    @property
    def places_path(self):
        return os.path.join(self.directory, f"places.{self.format}")

    @property
    def visits_path(self):
        return os.path.join(self.directory, f"visits.{self.format}")

    def _write(self, df, path):
        if self.format == "csv":
            df.to_csv(path, index=False)
        else:
            pq.write_table(pa.Table.from_pandas(df, preserve_index=False), path)

    def _read(self, path):
        if self.format == "csv":
            return pd.read_csv(path, dtype={'id': str, 'place_id': str,
                                            'name': object, 'street_address': object})
        return pq.read_table(path).to_pandas()

    def save(self, places):
        os.makedirs(self.directory, exist_ok=True)
        self._write(places_to_df(places), self.places_path)
        self._write(visits_to_df(places), self.visits_path)

    def load(self):
        if not os.path.exists(self.places_path):
            return []
        places_df = self._read(self.places_path)
        visits_df = self._read(self.visits_path) if os.path.exists(self.visits_path) else None
        return places_from_df(places_df, visits_df)
