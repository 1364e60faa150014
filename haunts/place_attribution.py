import numpy as np
import pandas as pd
import haunts.io.base as loader
from haunts.constants import (DEFAULT_CLASSIFIER_PARAMS, MORNING_HOURS, NAME_MATCH_CONFIDENCE,
                              NIGHT_HOURS, WORK_HOURS)
from haunts.models import PlaceCategory


def _in_hours(hour, window):
    start, end = window
    if start <= end:
        return (hour >= start) & (hour < end)
    # window wraps past midnight
    return (hour >= start) | (hour < end)


def category_from_name(name):
    """
    First category whose keyword appears in `name` (case-insensitive), or None.

    Categories are scanned in PlaceCategory declaration order.
    """
    if not name:
        return None
    lowered = name.lower()
    for category in PlaceCategory:
        for keyword in category.keywords:
            if keyword.lower() in lowered:
                return category
    return None


def visit_time_profile(visits, tz_offset=0):
    """
    Summarize when a place is visited.

    Parameters
    ----------
    visits : list of Visit
    tz_offset : int or array-like, optional
        Local UTC offset in seconds, applied to arrival times before the
        hour and weekday are read.

    Returns
    -------
    pd.Series
        n_visits, night_ratio, work_ratio, morning_visits and mean_dwell
        (seconds, closed visits only).
    """
    arrivals = np.array([v.arrival_time for v in visits], dtype=float)
    n = len(arrivals)
    closed = [v.dwell_time() for v in visits if not v.is_open]
    mean_dwell = float(np.mean(closed)) if closed else 0.0

    if n == 0:
        return pd.Series({'n_visits': 0, 'night_ratio': 0.0, 'work_ratio': 0.0,
                          'morning_visits': 0, 'mean_dwell': mean_dwell})

    local = pd.to_datetime(arrivals + np.asarray(tz_offset, dtype=float), unit='s')
    hour = np.asarray(local.hour)
    weekday = np.asarray(local.dayofweek) < 5

    night = _in_hours(hour, NIGHT_HOURS)
    work = weekday & _in_hours(hour, WORK_HOURS)
    morning = _in_hours(hour, MORNING_HOURS)

    return pd.Series({
        'n_visits': n,
        'night_ratio': night.sum() / n,
        'work_ratio': work.sum() / n,
        'morning_visits': int(morning.sum()),
        'mean_dwell': mean_dwell,
    })


def classify(visits, name=None, tz_offset=0, params=None, **kwargs):
    """
    Infer what a place is from its name or, failing that, its visit times.

    A keyword hit in `name` wins outright with a fixed high confidence.
    Otherwise the rules below are tried in order and the first match is
    returned, regardless of whether a later rule would be more confident:

    1. home: more than half of arrivals at night and mean dwell above 4 h.
    2. work: more than 60% of arrivals on weekday working hours and mean
       dwell above 2 h.
    3. gym: mean dwell between 30 min and 2 h with at least one morning arrival.
    4. other, with low confidence.

    Parameters
    ----------
    visits : list of Visit
    name : str, optional
        Geocoded or user supplied place name.
    tz_offset : int, optional
        Local UTC offset in seconds used to read visit hours.
    params : dict, optional
        Overrides for DEFAULT_CLASSIFIER_PARAMS thresholds.

    Returns
    -------
    tuple
        (PlaceCategory, confidence in [0, 1])
    """
    p = loader._parse_params(DEFAULT_CLASSIFIER_PARAMS, params, kwargs)

    by_name = category_from_name(name)
    if by_name is not None:
        return by_name, NAME_MATCH_CONFIDENCE

    if not visits:
        return PlaceCategory.OTHER, p['other_confidence']

    profile = visit_time_profile(visits, tz_offset=tz_offset)
    night_ratio = profile['night_ratio']
    work_ratio = profile['work_ratio']
    dwell = profile['mean_dwell']

    if night_ratio > p['home_night_ratio'] and dwell > p['home_min_dwell']:
        return PlaceCategory.HOME, float(min(p['home_confidence_cap'], 0.5 + night_ratio * 0.4))

    if work_ratio > p['work_ratio'] and dwell > p['work_min_dwell']:
        return PlaceCategory.WORK, float(min(p['work_confidence_cap'], 0.4 + work_ratio * 0.4))

    if p['gym_min_dwell'] < dwell < p['gym_max_dwell'] and profile['morning_visits'] > 0:
        return PlaceCategory.GYM, p['gym_confidence']

    return PlaceCategory.OTHER, p['other_confidence']
