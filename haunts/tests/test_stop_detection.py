import numpy as np
import pandas as pd
import pytest
from haunts.models import LocationSample, PlaceCluster, StationaryPoint
from haunts.stop_detection import utils
from haunts.stop_detection.grid_based import cluster_places, grid_cell_keys, grid_cluster_labels
from haunts.stop_detection.stationary import (StationaryRunTracker, extract_stationary_points,
                                              points_from_df, stationary_points)

T0 = 1_704_067_200


def segment(t_start, t_end, speed, lat=10.0, lon=20.0, step=10):
    """Samples every `step` seconds in [t_start, t_end)."""
    return [LocationSample(lat, lon, 5.0, speed, T0 + t) for t in np.arange(t_start, t_end, step)]


@pytest.fixture
def stop_between_drives():
    # drive 0-100 s, stay 100-400 s, drive 400-500 s
    return (segment(0, 100, 8.0, lat=9.99) +
            segment(100, 400, 0.0, lat=10.0) +
            segment(400, 500, 8.0, lat=10.01))


@pytest.fixture
def traj_df():
    rows = []
    for sid, offset, lat in [('s1', 0, 10.0), ('s2', 86_400, 10.0), ('s3', 2 * 86_400, 10.5)]:
        for s in segment(0, 60, 6.0) + segment(60, 360, 0.2, lat=lat) + segment(360, 420, 6.0):
            rows.append({'session_id': sid, 'latitude': s.latitude, 'longitude': s.longitude,
                         'timestamp': s.timestamp + offset, 'speed': s.speed})
    return pd.DataFrame(rows)


## ============================================= EXTRACTION =========================================
def test_stationary_run_between_fast_segments(stop_between_drives):
    points = extract_stationary_points([stop_between_drives], max_speed=1.0, min_dwell=120)
    assert len(points) == 1
    p = points[0]
    assert p.duration == pytest.approx(300)
    assert p.start_timestamp == T0 + 100
    assert p.end_timestamp == T0 + 400
    assert (p.latitude, p.longitude) == (10.0, 20.0)


def test_run_coordinate_is_first_sample():
    session = (segment(0, 50, 0.0, lat=10.0) + segment(50, 200, 0.0, lat=10.0002) +
               segment(200, 220, 5.0))
    points = extract_stationary_points([session], min_dwell=120)
    assert points[0].latitude == 10.0


@pytest.mark.parametrize("end, expected", [(119.5, 0), (120, 1)])
def test_min_dwell_boundary(end, expected):
    session = [LocationSample(10.0, 20.0, 5.0, 0.0, T0),
               LocationSample(10.0, 20.0, 5.0, 0.0, T0 + 60),
               LocationSample(10.0, 20.0, 5.0, 5.0, T0 + end)]
    points = extract_stationary_points([session], max_speed=1.0, min_dwell=120)
    assert len(points) == expected


def test_run_closes_at_session_end():
    points = extract_stationary_points([segment(0, 100, 5.0) + segment(100, 300, 0.0)], min_dwell=120)
    assert len(points) == 1
    # last sample at 290 s
    assert points[0].duration == pytest.approx(190)


def test_sessions_are_independent():
    # 100 s at the end of one session and 100 s at the start of the next
    first = segment(0, 50, 5.0) + segment(50, 160, 0.0)
    second = segment(200, 310, 0.0) + segment(310, 350, 5.0)
    assert extract_stationary_points([first, second], min_dwell=120) == []
    assert len(extract_stationary_points([first + second], min_dwell=120)) == 1


def test_short_sessions_are_skipped():
    assert extract_stationary_points([[LocationSample(10.0, 20.0, 5.0, 0.0, T0)], []]) == []


@pytest.mark.parametrize("speed", [None, float('nan'), -1.0])
def test_unknown_speed_counts_as_stationary(speed):
    session = segment(0, 200, speed) + segment(200, 210, 5.0)
    points = extract_stationary_points([session], min_dwell=120)
    assert len(points) == 1
    assert points[0].duration == pytest.approx(200)


def test_tracker_incremental():
    tracker = StationaryRunTracker(max_speed=1.0, min_dwell=120)
    out = [tracker.update(s) for s in segment(0, 200, 0.0)]
    assert out == [None] * len(out)
    assert tracker.run_open
    point = tracker.update(LocationSample(10.0, 20.0, 5.0, 3.0, T0 + 200))
    assert isinstance(point, StationaryPoint)
    assert not tracker.run_open
    assert tracker.finish() is None


def test_stationary_points_df(traj_df):
    stops = stationary_points(traj_df, max_speed=1.0, min_dwell=120)
    assert list(stops.columns) == ['latitude', 'longitude', 'start_timestamp',
                                   'end_timestamp', 'duration', 'session_id']
    assert len(stops) == 3
    assert list(stops['session_id']) == ['s1', 's2', 's3']
    assert np.allclose(stops['duration'], 300)
    assert np.allclose(stops['end_timestamp'] - stops['start_timestamp'], stops['duration'])


def test_stationary_points_custom_columns(traj_df):
    df = traj_df.drop(columns='session_id').rename(
        columns={'latitude': 'lat', 'longitude': 'lon', 'timestamp': 'unix', 'speed': 'spd'})
    stops = stationary_points(df, min_dwell=120, latitude='lat', longitude='lon', timestamp='unix', speed='spd')
    # one session: the three stays are separated by fast samples
    assert len(stops) == 3
    assert 'session_id' not in stops.columns
    assert 'lat' in stops.columns


def test_stationary_points_datetime_column(traj_df):
    df = traj_df.assign(datetime=pd.to_datetime(traj_df['timestamp'], unit='s', utc=True)).drop(columns='timestamp')
    stops = stationary_points(df, min_dwell=120)
    assert len(stops) == 3
    assert stops['start_timestamp'].iloc[0] == pytest.approx(T0 + 60)


def test_stationary_points_requires_speed(traj_df):
    with pytest.raises(ValueError):
        stationary_points(traj_df.drop(columns='speed'))
    with pytest.raises(TypeError):
        stationary_points(traj_df.to_dict())


def test_points_from_stop_table(traj_df):
    stops = stationary_points(traj_df, min_dwell=120)
    points = points_from_df(stops)
    assert points == extract_stationary_points(
        [g.pipe(lambda d: [LocationSample(a, b, 0.0, s, t) for a, b, s, t in
                           zip(d.latitude, d.longitude, d.speed, d.timestamp)])
         for _, g in traj_df.groupby('session_id')], min_dwell=120)


## ============================================= GRID =========================================
def test_grid_cell_keys():
    lat_key, lon_key = grid_cell_keys([10.0, 10.0001, 10.001], [20.0, 20.0001, 20.0], 50)
    assert lat_key[0] == lat_key[1]
    assert lon_key[0] == lon_key[1]
    assert lat_key[2] != lat_key[0]
    assert lat_key.dtype == np.int64


def test_grid_cell_keys_truncate_toward_zero():
    lat_key, lon_key = grid_cell_keys([-0.0001, 0.0001], [-0.0001, 0.0001], 50)
    assert list(lat_key) == [0, 0]
    assert list(lon_key) == [0, 0]


def test_grid_cluster_labels():
    df = pd.DataFrame({
        'latitude': [10.0, 10.0001, 10.0, 11.0, 12.0, 12.0001],
        'longitude': [20.0, 20.0, 20.0001, 20.0, 20.0, 20.0],
    }, index=[5, 6, 7, 8, 9, 10])
    labels = grid_cluster_labels(df, grid_cell_size=50, min_visits=2)
    assert labels.index.equals(df.index)
    assert list(labels) == [0, 0, 0, -1, 1, 1]


def test_grid_cluster_labels_empty():
    labels = grid_cluster_labels(pd.DataFrame(columns=['latitude', 'longitude']))
    assert labels.empty


def points_at(coords, duration=600):
    return [StationaryPoint(lat, lon, T0 + i * 3_600, duration) for i, (lat, lon) in enumerate(coords)]


def test_cluster_places():
    points = points_at([(12.0, 20.0), (10.0, 20.0), (12.0001, 20.0), (10.0001, 20.0), (11.0, 20.0)])
    clusters = cluster_places(points, grid_cell_size=50, min_visits=2, min_radius=25)
    assert len(clusters) == 2
    assert all(isinstance(c, PlaceCluster) for c in clusters)
    # first appearance order
    assert clusters[0].latitude == pytest.approx(12.00005)
    assert clusters[1].latitude == pytest.approx(10.00005)
    assert clusters[0].visit_count == 2
    assert clusters[0].total_dwell == 1_200


def test_cluster_spread():
    points = points_at([(10.0, 20.0), (10.0002, 20.0), (10.0001, 20.0)])
    [cluster] = cluster_places(points, min_visits=1, min_radius=5)
    expected = utils.haversine(10.0, 20.0, cluster.latitude, cluster.longitude)
    assert cluster.spread_radius == pytest.approx(expected)
    assert 10 < cluster.spread_radius < 12

    [floored] = cluster_places(points, min_visits=1, min_radius=25)
    assert floored.spread_radius == 25


def test_cluster_places_from_stop_table(traj_df):
    stops = stationary_points(traj_df, min_dwell=120)
    clusters = cluster_places(stops, min_visits=2)
    assert len(clusters) == 1
    assert clusters[0].visit_count == 2
    assert cluster_places(stops, min_visits=3) == []


def test_cluster_places_rejects_other_inputs():
    assert cluster_places([]) == []
    with pytest.raises(TypeError):
        cluster_places([(10.0, 20.0)])
