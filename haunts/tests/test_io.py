import numpy as np
import pandas as pd
import geopandas as gpd
import pytest
import haunts.io.base as loader
from haunts.models import Place, PlaceCategory, Visit

T0 = 1_704_067_200


@pytest.fixture
def fixes():
    return pd.DataFrame({
        'lat': [10.0, 10.0, 10.0001],
        'lon': [20.0, 20.0, 20.0],
        'unix': [T0 + 60, T0, T0 + 120],
        'spd': ['0.5', '0.0', '3.0'],
        'acc': [5, 8, 12],
    })


@pytest.fixture
def places():
    home = Place(10.0, 20.0, radius=60, name="Home", category="home", confidence=0.9,
                 visit_history=[Visit(T0, T0 + 3_600), Visit(T0 + 86_400)],
                 created_at=T0, last_visited_at=T0 + 86_400)
    cafe = Place(10.01, 20.0, street_address="1 Main St", category=PlaceCategory.CAFE,
                 visit_history=[Visit(T0 + 7_200, T0 + 9_000)], is_confirmed=True,
                 created_at=T0 + 7_200, last_visited_at=T0 + 7_200)
    return [home, cafe]


## ============================================= TRAJECTORIES =========================================
def test_from_df_casts_and_sorts(fixes):
    df = loader.from_df(fixes, latitude='lat', longitude='lon', timestamp='unix', speed='spd', ha='acc')
    assert list(df['unix']) == [T0, T0 + 60, T0 + 120]
    assert df['spd'].dtype == 'float64'
    assert df['acc'].dtype == 'float64'
    assert list(df.index) == [1, 0, 2]


def test_from_df_fills_accuracy(fixes):
    df = loader.from_df(fixes.drop(columns='acc'), traj_cols={'latitude': 'lat', 'longitude': 'lon',
                                                              'timestamp': 'unix', 'speed': 'spd'})
    assert (df['ha'] == 0).all()


def test_from_df_milliseconds(fixes):
    fixes['unix'] = fixes['unix'] * 1_000
    with pytest.warns(UserWarning, match="milliseconds"):
        df = loader.from_df(fixes, latitude='lat', longitude='lon', timestamp='unix', speed='spd')
    assert df['unix'].min() == T0


def test_from_df_naive_datetime(fixes):
    fixes['when'] = pd.to_datetime(fixes['unix'], unit='s')
    fixes = fixes.drop(columns='unix')
    with pytest.warns(UserWarning, match="timezone-naive"):
        df = loader.from_df(fixes, latitude='lat', longitude='lon', datetime='when', speed='spd')
    assert df['timestamp'].iloc[0] == T0


def test_from_df_validation(fixes):
    with pytest.raises(TypeError):
        loader.from_df(fixes.to_numpy())
    with pytest.raises(ValueError):
        loader.from_df(fixes, timestamp='unix', speed='spd')
    with pytest.raises(ValueError):
        loader.from_df(fixes, latitude='lat', longitude='lon', speed='spd')
    with pytest.raises(ValueError):
        loader.from_df(fixes, latitude='lat', longitude='lon', timestamp='unix')


def test_conflicting_column_names(fixes):
    with pytest.raises(ValueError):
        loader.from_df(fixes, traj_cols={'latitude': 'lat'}, latitude='y')


def test_missing_column_warns(fixes):
    with pytest.warns(UserWarning, match="not found"):
        loader.from_df(fixes, latitude='lat', longitude='lon', timestamp='unix', speed='spd',
                       session_id='user')


def test_sessions_from_df(fixes):
    fixes['sid'] = ['b', 'a', 'b']
    sessions = loader.sessions_from_df(fixes, latitude='lat', longitude='lon', timestamp='unix',
                                       speed='spd', ha='acc', session_id='sid')
    assert [len(s) for s in sessions] == [1, 2]
    assert sessions[1][0].timestamp == T0 + 60
    assert sessions[1][1].speed == 3.0
    assert sessions[0][0].accuracy == 8.0


def test_samples_without_speed(fixes):
    df = loader.from_df(fixes.drop(columns='spd'), require_speed=False,
                        latitude='lat', longitude='lon', timestamp='unix')
    samples = loader.samples_from_df(df, latitude='lat', longitude='lon', timestamp='unix')
    assert all(s.speed is None for s in samples)
    assert not samples[0].speed_known


def test_parse_params():
    merged = loader._parse_params({'a': 1, 'b': 2}, {'a': 3}, {'b': 4})
    assert merged == {'a': 3, 'b': 4}
    with pytest.raises(ValueError):
        loader._parse_params({'a': 1}, {'c': 3})


## ============================================= PLACES =========================================
def test_place_tables(places):
    df = loader.places_to_df(places)
    assert list(df['category']) == ['home', 'cafe']
    assert list(df['visit_count']) == [2, 1]
    visits = loader.visits_to_df(places)
    assert len(visits) == 3
    assert np.isnan(visits['departure_time'].iloc[1])


def test_places_round_trip(places):
    restored = loader.places_from_df(loader.places_to_df(places), loader.visits_to_df(places))
    for a, b in zip(places, restored):
        assert a == b


@pytest.mark.parametrize("fmt", ["csv", "parquet"])
def test_place_files(places, tmp_path, fmt):
    path = tmp_path / f"places.{fmt}"
    loader.to_file(places, path, format=fmt)
    restored = loader.from_file(path, format=fmt)
    assert [p.id for p in restored] == [p.id for p in places]
    assert restored[0].name == "Home"
    assert restored[1].name is None
    assert restored[1].category == PlaceCategory.CAFE
    assert restored[1].is_confirmed
    assert restored[0].radius == 60


def test_place_geojson(places, tmp_path):
    path = tmp_path / "places.geojson"
    loader.to_file(places, path, format="geojson")
    gdf = gpd.read_file(path)
    assert len(gdf) == 2
    assert set(gdf["category"]) == {"home", "cafe"}


def test_places_to_gdf(places):
    gdf = loader.places_to_gdf(places)
    assert isinstance(gdf, gpd.GeoDataFrame)
    assert gdf.crs.to_epsg() == 4326
    assert gdf.geometry.iloc[1].y == pytest.approx(10.01)


def test_file_store_missing_directory(tmp_path):
    store = loader.PlaceFileStore(tmp_path / "nothing")
    assert store.load() == []


def test_file_store_round_trip(places, tmp_path):
    store = loader.PlaceFileStore(tmp_path / "store", format="parquet")
    store.save(places)
    restored = store.load()
    assert restored == places
